import asyncio
import logging
import random
from contextlib import AsyncExitStack, asynccontextmanager
from urllib.parse import urlsplit

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright
from playwright_stealth import Stealth

from config import SELECTORS, settings
from errors import AutomationFailure

logger = logging.getLogger(__name__)

UA_POOL = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"
]


def get_user_agent():
    if settings.USER_AGENT and settings.USER_AGENT.strip():
        return settings.USER_AGENT.strip()
    return random.choice(UA_POOL)


def _same_page(current: str, expected: str) -> bool:
    a, b = urlsplit(current), urlsplit(expected)
    return (a.netloc.lower(), a.path.rstrip("/").lower()) == (b.netloc.lower(), b.path.rstrip("/").lower())


class Session:
    """One long-lived page per group. ``lock`` serializes UI work on the page."""

    def __init__(self, group: str, url: str):
        self.group = group
        self.url = url
        self.context = None
        self.page = None
        self.stale = True
        self.lock = asyncio.Lock()

    @property
    def is_open(self):
        return self.page is not None and not self.page.is_closed()


class SessionPool:
    def __init__(self, group_url=None):
        self.group_url = group_url or settings.group_url
        self.browser = None
        self.playwright = None
        self.exit_stack = AsyncExitStack()
        self.sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def _launch(self):
        if self.browser:
            return

        stealth_ctx = Stealth().use_async(async_playwright())
        self.playwright = await self.exit_stack.enter_async_context(stealth_ctx)

        launch_args = [
            "--disable-blink-features=AutomationControlled",
            "--no-sandbox",
            "--disable-setuid-sandbox",
            "--disable-dev-shm-usage",
            "--disable-gpu",
        ]

        if settings.HEADLESS:
            launch_args.append("--headless=new")

        self.browser = await self.playwright.chromium.launch(
            headless=settings.HEADLESS,
            args=launch_args
        )
        logger.info("Browser launched")

    async def acquire(self, group: str) -> Session:
        async with self._lock:
            session = self.sessions.get(group)
            if session is None:
                session = Session(group, self.group_url(group))
                self.sessions[group] = session
                logger.info(f"Created session for group {group}")
            return session

    async def _open_page(self, session: Session):
        async with self._lock:
            await self._launch()

        if session.context:
            try:
                await session.context.close()
            except PlaywrightError:
                pass

        ua = get_user_agent()
        session.context = await self.browser.new_context(
            viewport={"width": 1920, "height": 1080},
            locale="en-US",
            user_agent=ua,
        )
        session.page = await session.context.new_page()
        session.stale = True
        logger.info(f"Opened page for group {session.group} (UA {ua[:30]}...)")

    async def ensure_ready(self, session: Session):
        """Open and navigate the page when it is new, stale or elsewhere."""
        try:
            if not session.is_open:
                await self._open_page(session)

            if session.stale or not _same_page(session.page.url, session.url):
                logger.info(f"Navigating {session.group} session to {session.url}")
                await session.page.goto(
                    session.url,
                    wait_until="domcontentloaded",
                    timeout=settings.NAVIGATION_TIMEOUT * 1000
                )
                for key in ("model_select", "message"):
                    await session.page.wait_for_selector(
                        SELECTORS[key], timeout=settings.ELEMENT_TIMEOUT * 1000
                    )
                session.stale = False
        except PlaywrightError as e:
            self.invalidate(session)
            raise AutomationFailure(f"Could not open the chat page for group '{session.group}'") from e

    def invalidate(self, session: Session):
        if not session.stale:
            logger.info(f"Session for group {session.group} invalidated")
        session.stale = True

    @asynccontextmanager
    async def lease(self, group: str):
        """Exclusive, ready-to-use session for one request."""
        session = await self.acquire(group)
        async with session.lock:
            await self.ensure_ready(session)
            try:
                yield session
            except BaseException:
                # Failed or cancelled mid-interaction; next request starts from a fresh page load
                self.invalidate(session)
                raise

    async def close_all(self):
        async with self._lock:
            for session in self.sessions.values():
                if session.context:
                    try:
                        await session.context.close()
                    except PlaywrightError as e:
                        logger.warning(f"Error closing {session.group} context: {e}")
                session.context = None
                session.page = None
                session.stale = True
            self.sessions.clear()

            if self.browser:
                await self.browser.close()
                self.browser = None
            await self.exit_stack.aclose()
            self.exit_stack = AsyncExitStack()
            self.playwright = None
