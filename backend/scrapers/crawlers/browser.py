"""
Headless browser pool for bot-defended sites.

One Chromium process is shared by every browser scraper. Pages are lent
out through ``async with pool.page() as page:``; each page lives in its own
context configured to look like a desktop Chrome on Windows, and is closed
when the block exits.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional
import logging

from bs4 import BeautifulSoup
from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from ..base import ScrapeError
from ..utils.extractors import detect_block, page_text

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
)
DEFAULT_VIEWPORT = {'width': 1920, 'height': 1080}
ACCEPT_LANGUAGE = 'en-US,en;q=0.9'

LAUNCH_ARGS = [
    '--disable-blink-features=AutomationControlled',
    '--disable-dev-shm-usage',
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-infobars',
    '--disable-background-timer-throttling',
    '--disable-backgrounding-occluded-windows',
    '--disable-renderer-backgrounding',
    '--disable-gpu',
]

# Runs before any page script
STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {
    get: () => undefined
});

Object.defineProperty(navigator, 'plugins', {
    get: () => [
        { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer' },
        { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai' },
        { name: 'Native Client', filename: 'internal-nacl-plugin' },
    ]
});

Object.defineProperty(navigator, 'languages', {
    get: () => ['en-US', 'en']
});

Object.defineProperty(navigator, 'platform', {
    get: () => 'Win32'
});

window.chrome = { runtime: {} };

const originalQuery = window.navigator.permissions.query;
window.navigator.permissions.query = (parameters) => (
    parameters.name === 'notifications' ?
        Promise.resolve({ state: Notification.permission }) :
        originalQuery(parameters)
);
"""

SCROLL_SCRIPT = """
async () => {
    const delay = (ms) => new Promise((resolve) => setTimeout(resolve, ms));
    let last = -1;
    for (let i = 0; i < 20 && document.body.scrollHeight !== last; i++) {
        last = document.body.scrollHeight;
        window.scrollTo(0, last);
        await delay(250);
    }
}
"""

BrowserFactory = Callable[[], Awaitable[Browser]]


class BrowserPool:
    """
    Long-lived Chromium instance lending configured pages.

    Launch and page configuration are serialized by a lock; once handed out,
    pages are independent of each other.
    """

    def __init__(
        self,
        headless: bool = True,
        executable_path: Optional[str] = None,
        timeout: float = 60.0,
        user_agent: str = DEFAULT_USER_AGENT,
        browser_factory: Optional[BrowserFactory] = None,
    ):
        """
        Initialize the pool. The browser is launched on first use.

        Args:
            headless: Run Chromium without a window
            executable_path: Custom Chromium binary, None for Playwright's own
            timeout: Default page operation timeout in seconds
            user_agent: User agent reported by every page
            browser_factory: Coroutine function returning a Browser (tests)
        """
        self.headless = headless
        self.executable_path = executable_path
        self.timeout = timeout
        self.user_agent = user_agent
        self._browser_factory = browser_factory or self._launch
        self._lock = asyncio.Lock()
        self._playwright = None
        self._browser: Optional[Browser] = None
        self.pages_served = 0

    @property
    def started(self) -> bool:
        return self._browser is not None

    async def _launch(self) -> Browser:
        self._playwright = await async_playwright().start()
        launch_options: Dict[str, Any] = {
            'headless': self.headless,
            'args': LAUNCH_ARGS,
            'handle_sigint': False,
            'handle_sigterm': False,
            'handle_sighup': False,
        }
        if self.executable_path:
            launch_options['executable_path'] = self.executable_path
        logger.debug("Launching Chromium browser...")
        return await self._playwright.chromium.launch(**launch_options)

    async def _ensure_browser(self) -> Browser:
        """Launch the browser if needed. Caller holds the lock."""
        if self._browser is not None and not self._browser.is_connected():
            logger.warning("Browser disconnected, relaunching")
            await self._shutdown()
        if self._browser is None:
            self._browser = await self._browser_factory()
            logger.info(f"Browser pool started (headless={self.headless})")
        return self._browser

    async def _new_context(self, browser: Browser) -> BrowserContext:
        return await browser.new_context(
            viewport=DEFAULT_VIEWPORT,
            user_agent=self.user_agent,
            locale='en-US',
            extra_http_headers={'Accept-Language': ACCEPT_LANGUAGE},
        )

    @asynccontextmanager
    async def page(self) -> AsyncIterator[Page]:
        """
        Borrow a configured page.

        The stealth script is installed before the page is returned, so it
        runs ahead of any navigation. The page and its context are closed on
        every exit path.
        """
        async with self._lock:
            browser = await self._ensure_browser()
            context = await self._new_context(browser)
            try:
                await context.add_init_script(STEALTH_INIT_SCRIPT)
                page = await context.new_page()
                page.set_default_timeout(self.timeout * 1000)
            except BaseException:
                await _close_quietly(context)
                raise
            self.pages_served += 1

        try:
            yield page
        finally:
            await _close_quietly(context)

    async def _shutdown(self):
        if self._browser is not None:
            await _close_quietly(self._browser)
            self._browser = None
        if self._playwright is not None:
            try:
                await asyncio.wait_for(self._playwright.stop(), timeout=5.0)
            except (asyncio.TimeoutError, PlaywrightError) as e:
                logger.warning(f"Error stopping playwright: {e}")
            self._playwright = None

    async def close(self):
        """Shut the browser down. The pool can be reused afterwards."""
        async with self._lock:
            await self._shutdown()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


async def _close_quietly(resource, timeout: float = 5.0):
    """Close a page, context or browser without letting cleanup fail the caller."""
    try:
        await asyncio.wait_for(resource.close(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Closing {type(resource).__name__} timed out")
    except PlaywrightError as e:
        logger.debug(f"Error closing {type(resource).__name__}: {e}")


async def navigate_with_retry(page: Page, url: str, max_retries: int = 3,
                              settle_timeout: float = 10.0, backoff: float = 1.0):
    """
    Navigate to ``url``, retrying with linear backoff.

    After a successful navigation the page is given ``settle_timeout``
    seconds to reach network idle; pages that keep polling are used as they
    are once the timeout passes.

    Raises:
        ScrapeError: If every attempt failed
    """
    last_error = None
    for attempt in range(max_retries):
        try:
            response = await page.goto(url, wait_until='domcontentloaded')
        except PlaywrightError as e:
            last_error = e
            logger.warning(f"Navigation attempt {attempt + 1}/{max_retries} failed for {url}: {e}")
            if attempt < max_retries - 1:
                await asyncio.sleep(backoff * (attempt + 1))
            continue

        try:
            await page.wait_for_load_state('networkidle', timeout=settle_timeout * 1000)
        except PlaywrightTimeoutError:
            logger.debug(f"Page did not reach network idle within {settle_timeout}s: {url}")
        return response

    raise ScrapeError(f"navigation to {url} failed after {max_retries} attempts: {last_error}", url=url)


async def scroll_to_bottom(page: Page):
    """Scroll until the page height stops growing, to trigger lazy loading."""
    try:
        await page.evaluate(SCROLL_SCRIPT)
    except PlaywrightError as e:
        logger.debug(f"Scroll failed, continuing with current content: {e}")


def is_blocked(html: str) -> Optional[str]:
    """
    Check rendered HTML for an anti-bot challenge or access denial.

    Only the title and visible text are inspected, so script URLs that
    mention a CDN do not count.

    Returns:
        The matched marker, or None
    """
    return detect_block(page_text(BeautifulSoup(html, 'html.parser')))
