"""In-memory stand-ins for Playwright objects and the catalog refresher.

FakePage implements only the page methods the pool and watcher call. The
watcher's scripts are matched by identity against the constants in
``watcher`` so each ``evaluate`` returns scripted state.
"""

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

import watcher
from browser import SessionPool
from config import CATALOG_CACHE_KEY
from database import ModelRecord
from errors import CatalogRefreshError


def obs(text="", done=False, count=1, loading=False, reasoning=None, reasoning_count=None):
    if reasoning_count is None:
        reasoning_count = 1 if reasoning else 0
    return {
        "count": count,
        "text": text,
        "done": done,
        "loading": loading,
        "reasoning": reasoning,
        "reasoning_count": reasoning_count,
    }


class FakeKeyboard:
    def __init__(self, page):
        self.page = page
        self.pressed = []

    async def press(self, key):
        self.pressed.append(key)
        if key == "Enter":
            self.page.submit()


class FakePage:
    def __init__(
        self,
        observations=None,
        baseline=None,
        temperature_bounds=None,
        options=("gpt-4",),
        click_failures=0,
    ):
        self.url = "about:blank"
        self.closed = False
        self.goto_calls = []
        self.missing_selectors = set()
        self.options = list(options)
        self.selected = None
        self.temperature_bounds = temperature_bounds
        self.temperature = None
        self.message = ""
        self.sent = []
        self.click_failures = click_failures
        self.clicks = 0
        self.keyboard = FakeKeyboard(self)
        self.baseline = baseline or obs(count=0)
        self.observations = list(observations or [])

    def is_closed(self):
        return self.closed

    async def close(self):
        self.closed = True

    async def goto(self, url, **kwargs):
        self.goto_calls.append(url)
        self.url = url

    async def wait_for_selector(self, selector, **kwargs):
        if selector in self.missing_selectors:
            raise PlaywrightTimeoutError(f"Timeout waiting for selector {selector}")

    async def select_option(self, selector, value=None, **kwargs):
        if value in self.options:
            self.selected = value
            return [value]
        return []

    async def fill(self, selector, value, **kwargs):
        self.message = value

    async def focus(self, selector):
        pass

    async def click(self, selector, **kwargs):
        self.clicks += 1
        if self.clicks <= self.click_failures:
            raise PlaywrightError("Element is not visible")
        self.submit()

    def submit(self):
        self.sent.append(self.message)

    def next_observation(self):
        if not self.sent:
            return dict(self.baseline)
        if not self.observations:
            return dict(self.baseline)
        item = self.observations.pop(0) if len(self.observations) > 1 else self.observations[0]
        if isinstance(item, Exception):
            raise item
        return dict(item)

    async def evaluate(self, script, arg=None):
        if script == watcher.OBSERVE_JS:
            return self.next_observation()
        if script == watcher.TEMPERATURE_BOUNDS_JS:
            return self.temperature_bounds
        if script == watcher.SET_TEMPERATURE_JS:
            self.temperature = arg[1]
            return str(arg[1])
        raise AssertionError(f"Unexpected script: {script[:40]}")


class FakeContext:
    def __init__(self, page_factory):
        self.page_factory = page_factory
        self.pages = []
        self.closed = False

    async def new_page(self):
        page = self.page_factory()
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True
        for page in self.pages:
            page.closed = True


class FakeBrowser:
    def __init__(self, page_factory=FakePage):
        self.page_factory = page_factory
        self.contexts = []
        self.closed = False

    async def new_context(self, **kwargs):
        context = FakeContext(self.page_factory)
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True


class FakeRefresher:
    """Publishes ``snapshot`` into the store on refresh and counts calls."""

    def __init__(self, store, snapshot=None, fail=False):
        self.store = store
        self.snapshot = list(snapshot or [])
        self.fail = fail
        self.refresh_calls = 0

    async def refresh(self):
        self.refresh_calls += 1
        if self.fail or not self.snapshot:
            raise CatalogRefreshError("No models could be discovered from any configured path")
        records = self.store.replace_models(self.snapshot)
        self.store.set_cache(CATALOG_CACHE_KEY, {"count": len(records)}, 7)
        return records

    async def get_models_list(self, force_refresh=False):
        if not force_refresh and self.store.get_cache(CATALOG_CACHE_KEY) is not None:
            return self.store.get_models()
        return await self.refresh()


def records(*pairs):
    return [ModelRecord(id=model_id, group=group) for model_id, group in pairs]


def make_pool(page_factory=FakePage):
    pool = SessionPool(group_url=lambda group: f"https://chat.example/{group}/")
    pool.browser = FakeBrowser(page_factory)
    return pool
