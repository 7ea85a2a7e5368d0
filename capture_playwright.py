"""
Browser Sessions using Playwright

One isolated headless Chromium per request, listening to network responses
through Playwright's event API. Default session backend.

Performance features:
- Headless mode
- Resource blocking (images, fonts, stylesheets)
- Fixed desktop user agent

License: MIT
"""

import logging
from typing import Callable, Dict, List, Optional

from playwright.sync_api import (
    sync_playwright,
    Error as PlaywrightError,
    Response,
    Route,
    TimeoutError as PlaywrightTimeoutError,
)

import settings
from errors import BrowserLaunchError, NavigationError, NavigationTimeout
from media_sniffer_utils import Exchange

# Configure logging
logger = logging.getLogger(__name__)

# ============================================================================
# Configuration
# ============================================================================

# Resources to block for faster loading
BLOCKED_RESOURCE_TYPES = ('image', 'font', 'stylesheet')

# ============================================================================
# Session
# ============================================================================

def exchange_from_response(response: Response) -> Exchange:
    """Convert a Playwright response into an Exchange record."""
    try:
        headers = {k.lower(): v for k, v in response.headers.items()}
    except PlaywrightError:
        headers = {}
    return Exchange(url=response.url, status=response.status, headers=headers)


def _block_heavy_resources(route: Route):
    """Abort images, fonts and styles; let everything else through."""
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        route.abort()
    else:
        route.continue_()


class PlaywrightSession:
    """
    A live browser page with its own context.

    Owns the Playwright driver, the browser, the context and the page; close()
    releases all of them and is safe to call more than once.
    """

    backend = "playwright"

    def __init__(self, playwright, browser, context, page):
        self._playwright = playwright
        self._browser = browser
        self._context = context
        self.page = page
        self._closed = False

    def subscribe(self, observer: Callable[[Exchange], None]):
        """Deliver every completed response to observer, in arrival order."""
        def on_response(response: Response):
            try:
                observer(exchange_from_response(response))
            except Exception as e:
                logger.debug(f"Error in response observer: {e}")

        self.page.on('response', on_response)

    def navigate(self, url: str, timeout_ms: int = settings.NAVIGATION_TIMEOUT_MS):
        logger.info(f"📄 Navigating to: {url}")
        try:
            self.page.goto(url, wait_until='domcontentloaded', timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(str(e)) from e
        except PlaywrightError as e:
            raise NavigationError(str(e)) from e
        logger.info("✅ Page loaded")

    def wait(self, seconds: float):
        # wait_for_timeout keeps dispatching response events while idle
        self.page.wait_for_timeout(seconds * 1000)

    def evaluate(self, script: str):
        """Run a JS function expression such as '() => {...}' in the page."""
        return self.page.evaluate(script)

    def scroll_to_bottom(self):
        self.page.evaluate("() => window.scrollTo(0, document.body.scrollHeight)")

    def cookies(self) -> List[Dict]:
        return self._context.cookies()

    def click_first(self, selectors: List[str], timeout_ms: int = 1000) -> Optional[str]:
        """Click the first visible element matching one of selectors."""
        for selector in selectors:
            try:
                element = self.page.locator(selector).first
                if element.count() and element.is_visible():
                    element.click(timeout=timeout_ms)
                    return selector
            except PlaywrightError:
                continue
        return None

    def close(self):
        if self._closed:
            return
        self._closed = True

        if self._browser:
            try:
                self._browser.close()
                logger.info("Browser closed")
            except Exception as e:
                logger.warning(f"Error closing browser: {e}")
            finally:
                self._browser = None

        if self._playwright:
            try:
                self._playwright.stop()
            except Exception as e:
                logger.warning(f"Error stopping playwright: {e}")
            finally:
                self._playwright = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

# ============================================================================
# Session Manager
# ============================================================================

class PlaywrightSessionManager:
    """
    Opens isolated Playwright sessions.

    Nothing is shared between sessions: every open() starts its own driver and
    browser, so a crash in one request cannot leak into another.
    """

    def __init__(
        self,
        headless: bool = settings.HEADLESS,
        browser_args: Optional[List[str]] = None,
        user_agent: str = settings.USER_AGENT,
        block_resources: bool = True,
        executable_path: Optional[str] = None,
    ):
        self.headless = headless
        self.browser_args = browser_args or settings.BROWSER_ARGS
        self.user_agent = user_agent
        self.block_resources = block_resources
        self.executable_path = executable_path or settings.BROWSER_EXECUTABLE_PATH

    def open(self) -> PlaywrightSession:
        logger.info("Starting Playwright browser...")
        playwright = None
        browser = None
        try:
            playwright = sync_playwright().start()
            browser = playwright.chromium.launch(
                headless=self.headless,
                args=self.browser_args,
                executable_path=self.executable_path,
            )
            context = browser.new_context(user_agent=self.user_agent)
            page = context.new_page()
            if self.block_resources:
                page.route('**/*', _block_heavy_resources)
        except Exception as e:
            logger.error(f"❌ Failed to start browser: {e}")
            if browser:
                try:
                    browser.close()
                except Exception:
                    logger.debug("Browser close after failed launch raised", exc_info=True)
            if playwright:
                playwright.stop()
            raise BrowserLaunchError(f"Failed to start the browser: {e}") from e

        logger.info("✅ Playwright browser started successfully")
        return PlaywrightSession(playwright, browser, context, page)
