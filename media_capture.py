"""
Media Discovery

Drives one browser session per request: every observed response goes through
the NetworkObserver, which classifies it and keeps the first candidate per URL.
After navigation and a settle delay, a DOM scan runs as a fallback when the
network pass found nothing.

Example:
    >>> candidates = discover_media("https://example.com/watch/123")
    >>> [c.kind for c in candidates]
    [<Kind.ADAPTIVE: 'adaptive'>]

License: MIT
"""

import logging
from collections import OrderedDict
from typing import Callable, List, Optional

import settings
from errors import InvalidPageUrlError, NavigationError, NoMediaFoundError
from media_sniffer_utils import (
    Exchange,
    Kind,
    VideoCandidate,
    classify_resource,
    dedupe_preserving_order,
    is_master_manifest,
    normalize_page_url,
    rendition_label,
)

# Configure logging
logger = logging.getLogger(__name__)

ACCEPTED_STATUSES = (200, 206)

# ============================================================================
# In-page scripts
# ============================================================================

PAGE_THUMBNAIL_JS = """
() => {
    const ogImage = document.querySelector('meta[property="og:image"]');
    if (ogImage && ogImage.content) return ogImage.content;

    const video = document.querySelector('video');
    if (video && video.poster) return video.poster;

    return null;
}
"""

DOM_PLAYLIST_SCAN_JS = """
() => {
    const urls = [];
    const looksAdaptive = (src) => src && (src.includes('.m3u8') || src.includes('hls'));

    document.querySelectorAll('video, source').forEach(el => {
        if (looksAdaptive(el.src)) urls.push(el.src);
    });

    document.querySelectorAll('script').forEach(script => {
        const text = script.textContent;
        if (!text) return;
        const matches = text.match(/https?:\\/\\/[^\\s"']+\\.m3u8[^\\s"']*/g);
        if (matches) urls.push(...matches);
    });

    return [...new Set(urls)];
}
"""

# ============================================================================
# Network Observer
# ============================================================================

class NetworkObserver:
    """
    Classifies exchanges and accumulates candidates, first URL wins.

    Args:
        min_direct_bytes: Direct files declaring fewer bytes are dropped
    """

    def __init__(self, min_direct_bytes: int = settings.MIN_DIRECT_BYTES):
        self.min_direct_bytes = min_direct_bytes
        self._found: "OrderedDict[str, VideoCandidate]" = OrderedDict()

    def __len__(self):
        return len(self._found)

    def observe(self, exchange: Exchange) -> Optional[VideoCandidate]:
        """Handle one exchange; returns the new candidate if one was accepted."""
        url = exchange.url
        status = exchange.status

        if 300 <= status < 400:
            return None
        if status not in ACCEPTED_STATUSES:
            return None
        if url in self._found:
            return None

        content_type = exchange.content_type
        kind = classify_resource(url, content_type)
        if kind is None:
            return None

        if kind is Kind.DIRECT:
            size = exchange.declared_size
            if size is not None and size < self.min_direct_bytes:
                logger.debug(f"Skipping small file ({size} bytes): {url[:80]}")
                return None
            candidate = VideoCandidate(
                source_url=url,
                kind=kind,
                media_type=content_type,
                size_bytes=size,
            )
        else:
            master = is_master_manifest(url)
            candidate = VideoCandidate(
                source_url=url,
                kind=kind,
                media_type=content_type,
                quality='Adaptive' if master else rendition_label(url),
            )

        self._found[url] = candidate
        logger.info(f"✅ Detected {kind.value} candidate: {url[:80]}")
        return candidate

    def candidates(self) -> List[VideoCandidate]:
        return list(self._found.values())

# ============================================================================
# Sessions
# ============================================================================

def open_browser_session(backend: str = settings.BROWSER_BACKEND):
    """
    Open a browser session with the named backend.

    Both backends return an object with subscribe, navigate, wait, evaluate,
    scroll_to_bottom, cookies, click_first and close.
    """
    if backend == "selenium":
        from capture_selenium_cdp import SeleniumCDPSessionManager
        return SeleniumCDPSessionManager().open()

    from capture_playwright import PlaywrightSessionManager
    return PlaywrightSessionManager().open()


def extract_page_thumbnail(session) -> Optional[str]:
    try:
        thumbnail = session.evaluate(PAGE_THUMBNAIL_JS)
    except Exception as e:
        logger.debug(f"Thumbnail extraction failed: {e}")
        return None
    return thumbnail or None


def scan_dom_for_playlists(session) -> List[VideoCandidate]:
    """Look for playlist URLs in video/source elements and inline scripts."""
    try:
        urls = session.evaluate(DOM_PLAYLIST_SCAN_JS) or []
    except Exception as e:
        logger.error(f"Error searching for HLS URLs: {e}")
        return []

    return [
        VideoCandidate(
            source_url=url,
            kind=Kind.ADAPTIVE,
            media_type='application/x-mpegurl',
        )
        for url in dedupe_preserving_order(urls)
    ]

# ============================================================================
# Discovery
# ============================================================================

def discover_media(
    page_url: str,
    session_factory: Optional[Callable] = None,
    navigation_timeout_ms: int = settings.NAVIGATION_TIMEOUT_MS,
    settle_seconds: float = settings.SETTLE_SECONDS,
    min_direct_bytes: int = settings.MIN_DIRECT_BYTES,
) -> List[VideoCandidate]:
    """
    Discover downloadable media on a page.

    Args:
        page_url: Page to load
        session_factory: Callable returning an open browser session
            (defaults to open_browser_session)
        navigation_timeout_ms: Navigation timeout
        settle_seconds: Extra wait after navigation for late players
        min_direct_bytes: Size floor for direct files

    Returns:
        Candidates in discovery order, all carrying the page thumbnail

    Raises:
        InvalidPageUrlError: If page_url is empty or not http(s); no session
            is opened
        NoMediaFoundError: If neither the network pass nor the DOM scan found
            anything
        BrowserLaunchError: If the browser could not be started
    """
    url = normalize_page_url(page_url)
    if url is None:
        raise InvalidPageUrlError()

    logger.info(f"🎬 Starting media discovery for: {url}")
    observer = NetworkObserver(min_direct_bytes=min_direct_bytes)
    session = (session_factory or open_browser_session)()

    try:
        session.subscribe(observer.observe)

        try:
            session.navigate(url, navigation_timeout_ms)
        except NavigationError as e:
            logger.warning(f"⚠️ Navigation timeout or error, continuing to capture requests: {e}")

        try:
            session.scroll_to_bottom()
        except Exception as e:
            logger.debug(f"Scroll failed: {e}")
        thumbnail = extract_page_thumbnail(session)

        logger.info(f"⏳ Waiting {settle_seconds}s for video requests...")
        session.wait(settle_seconds)

        candidates = observer.candidates()
        if not candidates:
            candidates = scan_dom_for_playlists(session)
            if candidates:
                logger.info(f"Found {len(candidates)} HLS streams in page content")
    finally:
        session.close()

    if not candidates:
        raise NoMediaFoundError()

    for candidate in candidates:
        candidate.thumbnail = thumbnail

    logger.info(f"✅ Discovery complete. Found {len(candidates)} videos")
    return candidates
