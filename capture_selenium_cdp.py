"""
Browser Sessions using Selenium 4 + CDP

Alternative session backend. Network responses are read from Chrome's
performance log (Network.responseReceived events) and handed to the observer
in log order; resource blocking goes through Network.setBlockedURLs.

Select with BROWSER_BACKEND=selenium.

License: MIT
"""

import json
import time
import logging
from typing import Callable, Dict, Iterable, List, Optional

from selenium import webdriver
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.chrome.options import Options as ChromeOptions
from selenium.webdriver.common.by import By
from selenium.common.exceptions import TimeoutException, WebDriverException
from webdriver_manager.chrome import ChromeDriverManager

import settings
from errors import BrowserLaunchError, NavigationError, NavigationTimeout
from media_sniffer_utils import Exchange

# Configure logging
logger = logging.getLogger(__name__)

# ============================================================================
# Configuration
# ============================================================================

# CDP has no resource-type blocking without the Fetch domain, so block by URL
BLOCKED_URL_PATTERNS = [
    '*.png', '*.jpg', '*.jpeg', '*.gif', '*.webp', '*.svg', '*.ico',
    '*.woff', '*.woff2', '*.ttf', '*.otf', '*.eot',
    '*.css',
]

POLL_INTERVAL = 0.3

# ============================================================================
# Performance log parsing
# ============================================================================

def exchanges_from_performance_log(entries: Iterable[Dict]) -> List[Exchange]:
    """
    Extract Exchange records from chromedriver performance log entries.

    Args:
        entries: Items returned by driver.get_log('performance')

    Returns:
        Exchanges for every Network.responseReceived event, in log order
    """
    exchanges = []
    for entry in entries:
        try:
            message = json.loads(entry['message'])['message']
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.debug(f"Error parsing log entry: {e}")
            continue

        if message.get('method') != 'Network.responseReceived':
            continue

        response = message.get('params', {}).get('response', {})
        url = response.get('url')
        if not url:
            continue
        headers = {k.lower(): str(v) for k, v in (response.get('headers') or {}).items()}
        exchanges.append(Exchange(
            url=url,
            status=int(response.get('status') or 0),
            headers=headers,
        ))
    return exchanges

# ============================================================================
# Session
# ============================================================================

class SeleniumCDPSession:
    """A Chrome WebDriver with CDP network logging enabled."""

    backend = "selenium"

    def __init__(self, driver):
        self.driver = driver
        self._observers: List[Callable[[Exchange], None]] = []

    def subscribe(self, observer: Callable[[Exchange], None]):
        self._observers.append(observer)

    def _drain(self):
        """Feed pending performance log events to the observers."""
        if self.driver is None:
            return
        try:
            entries = self.driver.get_log('performance')
        except WebDriverException as e:
            logger.debug(f"Error getting performance logs: {e}")
            return

        for exchange in exchanges_from_performance_log(entries):
            for observer in self._observers:
                try:
                    observer(exchange)
                except Exception as e:
                    logger.debug(f"Error in response observer: {e}")

    def navigate(self, url: str, timeout_ms: int = settings.NAVIGATION_TIMEOUT_MS):
        logger.info(f"📄 Navigating to: {url}")
        self.driver.set_page_load_timeout(timeout_ms / 1000)
        try:
            self.driver.get(url)
        except TimeoutException as e:
            raise NavigationTimeout(str(e)) from e
        except WebDriverException as e:
            raise NavigationError(str(e)) from e
        finally:
            self._drain()
        logger.info("✅ Page loaded")

    def wait(self, seconds: float):
        deadline = time.monotonic() + seconds
        while True:
            self._drain()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            time.sleep(min(POLL_INTERVAL, remaining))

    def evaluate(self, script: str):
        """Run a JS function expression such as '() => {...}' in the page."""
        return self.driver.execute_script(f"return ({script})();")

    def scroll_to_bottom(self):
        self.driver.execute_script("window.scrollTo(0, document.body.scrollHeight);")

    def cookies(self) -> List[Dict]:
        cookies = []
        for cookie in self.driver.get_cookies():
            cookie = dict(cookie)
            # Playwright calls it "expires"; keep one shape for both backends
            if 'expiry' in cookie:
                cookie['expires'] = cookie.pop('expiry')
            cookies.append(cookie)
        return cookies

    def click_first(self, selectors: List[str], timeout_ms: int = 1000) -> Optional[str]:
        for selector in selectors:
            try:
                for element in self.driver.find_elements(By.CSS_SELECTOR, selector):
                    if element.is_displayed():
                        element.click()
                        return selector
            except WebDriverException:
                continue
        return None

    def close(self):
        if self.driver:
            try:
                self.driver.quit()
                logger.info("WebDriver closed")
            except Exception as e:
                logger.warning(f"Error closing WebDriver: {e}")
            finally:
                self.driver = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

# ============================================================================
# Session Manager
# ============================================================================

class SeleniumCDPSessionManager:
    """Opens one Chrome WebDriver per session."""

    def __init__(
        self,
        headless: bool = settings.HEADLESS,
        chrome_args: Optional[List[str]] = None,
        user_agent: str = settings.USER_AGENT,
        block_resources: bool = True,
        executable_path: Optional[str] = None,
    ):
        self.headless = headless
        self.chrome_args = chrome_args or settings.BROWSER_ARGS
        self.user_agent = user_agent
        self.block_resources = block_resources
        self.executable_path = executable_path or settings.BROWSER_EXECUTABLE_PATH

    def _options(self) -> ChromeOptions:
        options = ChromeOptions()
        if self.headless:
            options.add_argument('--headless=new')
        for arg in self.chrome_args:
            options.add_argument(arg)
        options.add_argument(f'--user-agent={self.user_agent}')
        if self.executable_path:
            options.binary_location = self.executable_path

        # Enable performance logging for CDP Network events
        options.set_capability('goog:loggingPrefs', {'performance': 'ALL'})
        return options

    def open(self) -> SeleniumCDPSession:
        logger.info("Starting Selenium Chrome WebDriver with CDP...")
        driver = None
        try:
            service = Service(ChromeDriverManager().install())
            driver = webdriver.Chrome(service=service, options=self._options())
            driver.execute_cdp_cmd('Network.enable', {})
            if self.block_resources:
                driver.execute_cdp_cmd('Network.setBlockedURLs', {'urls': BLOCKED_URL_PATTERNS})
        except Exception as e:
            logger.error(f"❌ Failed to start WebDriver: {e}")
            if driver:
                try:
                    driver.quit()
                except Exception:
                    logger.debug("WebDriver quit after failed launch raised", exc_info=True)
            raise BrowserLaunchError(f"Failed to start the browser: {e}") from e

        logger.info("✅ Selenium Chrome WebDriver started successfully")
        return SeleniumCDPSession(driver)
