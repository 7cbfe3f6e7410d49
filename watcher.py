"""Drive a chat page through one exchange and decide when the reply is done.

The remote site exposes no completion event. A reply counts as finished when
its copy button appears, or when its text stops changing for ``idle_polls``
consecutive polls while no loading indicator is shown. Reaching the overall
timeout with some text observed returns that text as a best-effort result.

How a page is read lives in ``DomObserver`` so the heuristic can change
without touching the state machine in ``CompletionWatcher``.
"""

import asyncio
import enum
import logging
import random
from dataclasses import dataclass, field
from typing import Optional

from playwright.async_api import Error as PlaywrightError

from config import SELECTORS, settings
from errors import AutomationFailure, AutomationTimeoutError

logger = logging.getLogger(__name__)

MAX_POLL_ERRORS = 5

OBSERVE_JS = """
(sel) => {
    const responses = document.querySelectorAll(sel.response);
    const last = responses.length ? responses[responses.length - 1] : null;
    let text = '';
    let done = false;
    if (last) {
        const clone = last.cloneNode(true);
        clone.querySelectorAll(sel.copy_button).forEach((el) => {
            done = true;
            el.remove();
        });
        text = clone.textContent || '';
    }
    const reasoningNodes = document.querySelectorAll(sel.reasoning);
    const reasoning = reasoningNodes.length ? reasoningNodes[reasoningNodes.length - 1].textContent : null;
    return {
        count: responses.length,
        text: text,
        done: done,
        loading: document.querySelector(sel.loading) !== null,
        reasoning: reasoning,
        reasoning_count: reasoningNodes.length,
    };
}
"""

TEMPERATURE_BOUNDS_JS = """
(selector) => {
    const el = document.querySelector(selector);
    if (!el) return null;
    const min = parseFloat(el.min);
    const max = parseFloat(el.max);
    return {min: Number.isNaN(min) ? null : min, max: Number.isNaN(max) ? null : max};
}
"""

SET_TEMPERATURE_JS = """
([selector, value]) => {
    const el = document.querySelector(selector);
    el.value = String(value);
    el.dispatchEvent(new Event('input', {bubbles: true}));
    el.dispatchEvent(new Event('change', {bubbles: true}));
    return el.value;
}
"""


class WatchState(enum.Enum):
    IDLE = "idle"
    NAVIGATING = "navigating"
    MODEL_SELECTED = "model_selected"
    MESSAGE_SENT = "message_sent"
    AWAITING_RESPONSE = "awaiting_response"
    STREAMING = "streaming"
    COMPLETE = "complete"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


TERMINAL_STATES = {WatchState.COMPLETE, WatchState.TIMED_OUT, WatchState.FAILED}


@dataclass
class CompletionResult:
    content: str
    reasoning: Optional[str] = None
    partial: bool = False


@dataclass
class Observation:
    count: int = 0
    text: str = ""
    done: bool = False
    loading: bool = False
    reasoning: Optional[str] = None
    reasoning_count: int = 0


@dataclass
class CompletionRun:
    """State of one exchange; kept per request, never on the shared watcher."""

    group: str = ""
    model: str = ""
    state: WatchState = WatchState.IDLE
    history: list = field(default_factory=lambda: [WatchState.IDLE])

    def transition(self, state: WatchState):
        if self.state in TERMINAL_STATES:
            return
        if state is not self.state:
            logger.debug(f"[{self.group}/{self.model}] {self.state.value} -> {state.value}")
            self.state = state
            self.history.append(state)


def format_messages(messages) -> str:
    """``role:content`` pairs joined with ``;``. Separators inside content are not escaped."""
    parts = []
    for msg in messages:
        if isinstance(msg, dict):
            role, content = msg.get("role", ""), msg.get("content", "")
        else:
            role, content = msg.role, msg.text
        parts.append(f"{role}:{content}")
    return ";".join(parts)


class DomObserver:
    """Reads the newest response. Copy controls are removed from a clone, so their captions never reach the text."""

    def __init__(self, selectors=None):
        self.selectors = dict(selectors or SELECTORS)

    async def observe(self, page) -> Observation:
        raw = await page.evaluate(OBSERVE_JS, self.selectors)
        if not raw:
            return Observation()
        reasoning = raw.get("reasoning")
        return Observation(
            count=int(raw.get("count") or 0),
            text=(raw.get("text") or "").strip(),
            done=bool(raw.get("done")),
            loading=bool(raw.get("loading")),
            reasoning=reasoning.strip() if reasoning else None,
            reasoning_count=int(raw.get("reasoning_count") or 0),
        )


class CompletionWatcher:
    def __init__(
        self,
        observer=None,
        poll_interval=None,
        timeout=None,
        idle_polls=None,
        send_retries=None,
        send_retry_delay=None,
        settle_delay=None,
        hesitation=(0.2, 0.6),
    ):
        self.observer = observer or DomObserver()
        self.selectors = getattr(self.observer, "selectors", SELECTORS)
        self.poll_interval = settings.POLL_INTERVAL if poll_interval is None else poll_interval
        self.timeout = settings.RESPONSE_TIMEOUT if timeout is None else timeout
        self.idle_polls = settings.IDLE_POLLS if idle_polls is None else idle_polls
        self.send_retries = settings.SEND_RETRIES if send_retries is None else send_retries
        self.send_retry_delay = settings.SEND_RETRY_DELAY if send_retry_delay is None else send_retry_delay
        self.settle_delay = settings.SETTLE_DELAY if settle_delay is None else settle_delay
        self.hesitation = hesitation

    async def run(self, page, model: str, prompt: str, temperature=None, stream=False, run: Optional[CompletionRun] = None) -> CompletionResult:
        run = run or CompletionRun(model=model)
        try:
            await self.select_model(page, model)
            await self.apply_temperature(page, temperature)
            run.transition(WatchState.MODEL_SELECTED)

            baseline = await self.observer.observe(page)
            await self.send_message(page, prompt)
            run.transition(WatchState.MESSAGE_SENT)

            return await self.wait_for_response(page, baseline, run, stream=stream)
        except AutomationTimeoutError:
            run.transition(WatchState.TIMED_OUT)
            raise
        except AutomationFailure:
            run.transition(WatchState.FAILED)
            raise
        except PlaywrightError as e:
            step = run.state.value.replace("_", " ")
            run.transition(WatchState.FAILED)
            raise AutomationFailure(f"Browser automation failed after state '{step}'") from e
        except asyncio.CancelledError:
            run.transition(WatchState.FAILED)
            logger.info(f"[{run.group}/{model}] completion cancelled")
            raise

    async def select_model(self, page, model: str):
        selected = await page.select_option(self.selectors["model_select"], value=model)
        if model not in (selected or []):
            raise AutomationFailure(f"Model '{model}' is not selectable on the chat page")
        if self.settle_delay:
            await asyncio.sleep(self.settle_delay)

    async def apply_temperature(self, page, temperature) -> bool:
        """Set the control only when the value is inside its own declared bounds."""
        if temperature is None:
            return False
        selector = self.selectors["temperature"]
        bounds = await page.evaluate(TEMPERATURE_BOUNDS_JS, selector)
        if bounds is None:
            logger.debug("No temperature control on page, using remote default")
            return False
        low, high = bounds.get("min"), bounds.get("max")
        if (low is not None and temperature < low) or (high is not None and temperature > high):
            logger.debug(f"Temperature {temperature} outside [{low}, {high}], using remote default")
            return False
        await page.evaluate(SET_TEMPERATURE_JS, [selector, temperature])
        return True

    async def send_message(self, page, prompt: str):
        selector = self.selectors["message"]
        logger.debug(f"Inputting message: {prompt[:100]}")
        await page.fill(selector, "")
        await page.fill(selector, prompt)

        if self.hesitation:
            await asyncio.sleep(random.uniform(*self.hesitation))

        for attempt in range(1, self.send_retries + 1):
            try:
                await page.click(self.selectors["send_button"], timeout=5000)
                return
            except PlaywrightError as e:
                logger.info(f"Send button click attempt {attempt} failed: {e}")
                if attempt < self.send_retries and self.send_retry_delay:
                    await asyncio.sleep(self.send_retry_delay)

        logger.info("Falling back to keyboard submit")
        await page.focus(selector)
        await page.keyboard.press("Enter")

    async def wait_for_response(self, page, baseline: Observation, run: CompletionRun, stream=False) -> CompletionResult:
        run.transition(WatchState.AWAITING_RESPONSE)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout

        last_text = ""
        reasoning = None
        unchanged = 0
        errors = 0

        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                obs = await self.observer.observe(page)
                errors = 0
            except PlaywrightError as e:
                errors += 1
                logger.debug(f"Poll failed ({errors}/{MAX_POLL_ERRORS}): {e}")
                if errors >= MAX_POLL_ERRORS:
                    raise AutomationFailure("Lost contact with the chat page while waiting for a response") from e
                obs = None

            if obs is not None and self._is_new(obs, baseline):
                if self._reasoning_is_new(obs, baseline):
                    reasoning = obs.reasoning
                if obs.text != last_text:
                    last_text = obs.text
                    unchanged = 0
                    if stream and last_text:
                        run.transition(WatchState.STREAMING)
                else:
                    unchanged += 1

                if obs.done and obs.text:
                    logger.debug(f"[{run.group}/{run.model}] copy marker seen")
                    run.transition(WatchState.COMPLETE)
                    return CompletionResult(content=obs.text, reasoning=reasoning)

                if last_text and not obs.loading and unchanged >= self.idle_polls:
                    logger.debug(f"[{run.group}/{run.model}] text idle for {unchanged} polls")
                    run.transition(WatchState.COMPLETE)
                    return CompletionResult(content=last_text, reasoning=reasoning)

            if loop.time() >= deadline:
                if last_text:
                    logger.warning(
                        f"[{run.group}/{run.model}] no completion signal after {self.timeout}s, "
                        f"returning {len(last_text)} partial characters"
                    )
                    run.transition(WatchState.TIMED_OUT)
                    return CompletionResult(content=last_text, reasoning=reasoning, partial=True)
                raise AutomationTimeoutError(f"No response received within {self.timeout:g} seconds")

    @staticmethod
    def _is_new(obs: Observation, baseline: Observation) -> bool:
        if obs.count > baseline.count:
            return True
        return obs.count > 0 and obs.count == baseline.count and obs.text != baseline.text

    @staticmethod
    def _reasoning_is_new(obs: Observation, baseline: Observation) -> bool:
        # a reasoning region left over from an earlier exchange is not this reply's
        if not obs.reasoning:
            return False
        if obs.reasoning_count > baseline.reasoning_count:
            return True
        return obs.reasoning_count == baseline.reasoning_count and obs.reasoning != baseline.reasoning
