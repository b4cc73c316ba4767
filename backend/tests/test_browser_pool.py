"""
Tests for the browser pool and page helpers, using a fake browser.
"""

import pytest
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from scrapers.base import ScrapeError
from scrapers.crawlers.browser import (
    ACCEPT_LANGUAGE,
    DEFAULT_VIEWPORT,
    STEALTH_INIT_SCRIPT,
    BrowserPool,
    is_blocked,
    navigate_with_retry,
)


class FakePage:
    def __init__(self):
        self.default_timeout = None

    def set_default_timeout(self, timeout):
        self.default_timeout = timeout


class FakeContext:
    def __init__(self, options):
        self.options = options
        self.init_scripts = []
        self.closed = False

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def new_page(self):
        return FakePage()

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self):
        self.contexts = []
        self.connected = True
        self.closed = False

    def is_connected(self):
        return self.connected

    async def new_context(self, **options):
        context = FakeContext(options)
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True


class BrowserFactory:
    def __init__(self):
        self.launched = []

    async def __call__(self):
        browser = FakeBrowser()
        self.launched.append(browser)
        return browser


class TestBrowserPool:
    """Test page lending and browser lifecycle."""

    @pytest.mark.asyncio
    async def test_page_is_configured(self):
        factory = BrowserFactory()
        pool = BrowserPool(timeout=30, user_agent="TestAgent/1.0", browser_factory=factory)

        async with pool.page() as page:
            context = factory.launched[0].contexts[0]
            assert context.init_scripts == [STEALTH_INIT_SCRIPT]
            assert context.options["viewport"] == DEFAULT_VIEWPORT
            assert context.options["user_agent"] == "TestAgent/1.0"
            assert context.options["extra_http_headers"]["Accept-Language"] == ACCEPT_LANGUAGE
            assert page.default_timeout == 30000

        assert context.closed
        assert pool.pages_served == 1

    @pytest.mark.asyncio
    async def test_browser_is_shared(self):
        factory = BrowserFactory()
        pool = BrowserPool(browser_factory=factory)

        async with pool.page():
            pass
        async with pool.page():
            pass

        assert len(factory.launched) == 1
        assert len(factory.launched[0].contexts) == 2

    @pytest.mark.asyncio
    async def test_context_closed_on_error(self):
        factory = BrowserFactory()
        pool = BrowserPool(browser_factory=factory)

        with pytest.raises(RuntimeError):
            async with pool.page():
                raise RuntimeError("scrape failed")

        assert factory.launched[0].contexts[0].closed

    @pytest.mark.asyncio
    async def test_relaunch_after_disconnect(self):
        factory = BrowserFactory()
        pool = BrowserPool(browser_factory=factory)

        async with pool.page():
            pass
        factory.launched[0].connected = False
        async with pool.page():
            pass

        assert len(factory.launched) == 2
        assert factory.launched[0].closed

    @pytest.mark.asyncio
    async def test_close(self):
        factory = BrowserFactory()
        async with BrowserPool(browser_factory=factory) as pool:
            async with pool.page():
                pass
            assert pool.started

        assert not pool.started
        assert factory.launched[0].closed


class NavigatingPage:
    def __init__(self, failures=0, idle_timeout=False):
        self.failures = failures
        self.idle_timeout = idle_timeout
        self.attempts = 0

    async def goto(self, url, wait_until=None):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise PlaywrightError("net::ERR_TIMED_OUT")
        return "response"

    async def wait_for_load_state(self, state, timeout=None):
        if self.idle_timeout:
            raise PlaywrightTimeoutError("networkidle timeout")


class TestNavigation:
    """Test navigation retries and block checks."""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        page = NavigatingPage(failures=2)
        assert await navigate_with_retry(page, "https://x", max_retries=3, backoff=0) == "response"
        assert page.attempts == 3

    @pytest.mark.asyncio
    async def test_gives_up(self):
        page = NavigatingPage(failures=5)
        with pytest.raises(ScrapeError, match="failed after 2 attempts"):
            await navigate_with_retry(page, "https://x", max_retries=2, backoff=0)

    @pytest.mark.asyncio
    async def test_network_idle_timeout_is_tolerated(self):
        page = NavigatingPage(idle_timeout=True)
        assert await navigate_with_retry(page, "https://x", backoff=0) == "response"

    def test_is_blocked(self):
        assert is_blocked("<html><body>Verify you are human</body></html>") == "verify you are human"
        assert is_blocked('<html><body><script src="captcha.js"></script>Listings</body></html>') is None
