"""
Platform-hosted Video Resolution

Pages on known video platforms skip network sniffing. Instead:

1. resolve_agent() drives a browser session to the page, dismisses the
   consent dialog when one is shown and captures the cookie jar.
2. fetch_catalog() asks yt-dlp for the format catalog with those cookies.
3. select_formats() keeps formats carrying both audio and video.

The agent is fetched fresh for every request. Cached cookies go stale and
cause authorization failures that are harder to diagnose than a slow request.

License: MIT
"""

import re
import functools
import logging
from dataclasses import dataclass
from http.cookiejar import Cookie, CookieJar
from typing import Callable, Dict, List, Optional, Tuple

from requests.cookies import RequestsCookieJar
from yt_dlp import YoutubeDL
from yt_dlp.extractor import gen_extractor_classes, get_info_extractor

import settings
from errors import (
    NavigationError,
    PlatformError,
    PlatformProcessingError,
    PlatformRateLimitedError,
    PlatformRestrictedError,
)
from media_capture import open_browser_session
from media_sniffer_utils import Kind, VideoCandidate

# Configure logging
logger = logging.getLogger(__name__)

# Separates the page URL from the selected format in a candidate's source_url
FORMAT_KEY_MARKER = '#format_id='

PROGRESSIVE_PROTOCOLS = ('http', 'https')

HTTP_STATUS_REGEX = re.compile(r'HTTP Error (\d{3})', re.IGNORECASE)

RATE_LIMIT_STATUSES = {429}
RATE_LIMIT_SIGNATURES = ('too many requests', 'rate limit', 'rate-limit')

RESTRICTED_STATUSES = {401, 403, 410, 451}
RESTRICTED_SIGNATURES = (
    'private video',
    'this video is private',
    'video unavailable',
    'has been removed',
    'age-restricted',
    'age restricted',
    'sign in to confirm your age',
    'inappropriate for some users',
    'members-only',
    'not available in your country',
)

# ============================================================================
# Authenticated agent
# ============================================================================

@dataclass(frozen=True)
class BrowserCookie:
    name: str
    value: str
    domain: str
    path: str = '/'
    secure: bool = False
    http_only: bool = False
    expires: Optional[int] = None

    @classmethod
    def from_browser(cls, raw: Dict) -> "BrowserCookie":
        expires = raw.get('expires')
        # Playwright reports session cookies with expires=-1
        expires = int(expires) if expires and expires > 0 else None
        return cls(
            name=raw['name'],
            value=raw.get('value', ''),
            domain=raw.get('domain', ''),
            path=raw.get('path') or '/',
            secure=bool(raw.get('secure')),
            http_only=bool(raw.get('httpOnly')),
            expires=expires,
        )

    def to_cookiejar_cookie(self) -> Cookie:
        return Cookie(
            version=0,
            name=self.name,
            value=self.value,
            port=None,
            port_specified=False,
            domain=self.domain,
            domain_specified=bool(self.domain),
            domain_initial_dot=self.domain.startswith('.'),
            path=self.path,
            path_specified=True,
            secure=self.secure,
            expires=self.expires,
            discard=self.expires is None,
            comment=None,
            comment_url=None,
            rest={'HttpOnly': None} if self.http_only else {},
        )


@dataclass(frozen=True)
class AuthenticatedAgent:
    """Cookies captured for one platform URL, used for one follow-up request."""
    url: Optional[str]
    cookies: Tuple[BrowserCookie, ...] = ()

    @property
    def is_authenticated(self) -> bool:
        return bool(self.cookies)

    def install(self, jar: CookieJar) -> CookieJar:
        for cookie in self.cookies:
            jar.set_cookie(cookie.to_cookiejar_cookie())
        return jar

    def requests_cookies(self) -> RequestsCookieJar:
        return self.install(RequestsCookieJar())


UNAUTHENTICATED = AuthenticatedAgent(url=None)


def resolve_agent(url: str, session_factory: Optional[Callable] = None) -> AuthenticatedAgent:
    """
    Capture session cookies for a platform page.

    Never raises: any browser or navigation failure returns UNAUTHENTICATED,
    since some catalog queries succeed without cookies.
    """
    logger.info("Launching browser to fetch platform cookies...")
    try:
        session = (session_factory or open_browser_session)()
    except Exception as e:
        logger.error(f"Failed to get cookies: {e}")
        return UNAUTHENTICATED

    try:
        session.navigate(url, settings.NAVIGATION_TIMEOUT_MS)
        _dismiss_consent(session)
        raw_cookies = session.cookies()
    except NavigationError as e:
        logger.error(f"Failed to get cookies, navigation failed: {e}")
        return UNAUTHENTICATED
    except Exception as e:
        logger.error(f"Failed to get cookies: {e}")
        return UNAUTHENTICATED
    finally:
        session.close()

    cookies = tuple(BrowserCookie.from_browser(c) for c in raw_cookies if c.get('name'))
    logger.info(f"Extracted {len(cookies)} cookies")
    return AuthenticatedAgent(url=url, cookies=cookies)


def _dismiss_consent(session):
    try:
        selector = session.click_first(settings.CONSENT_SELECTORS)
    except Exception as e:
        logger.debug(f"Consent dialog handling failed: {e}")
        return
    if selector:
        logger.info(f"Dismissed consent dialog via {selector}")
        session.wait(settings.CONSENT_SETTLE_SECONDS)

# ============================================================================
# Platform detection
# ============================================================================

@functools.lru_cache(maxsize=8)
def _platform_extractors(keys: Tuple[str, ...]):
    if '*' in keys:
        return tuple(ie for ie in gen_extractor_classes() if ie.ie_key() != 'Generic')

    extractors = []
    for key in keys:
        try:
            extractors.append(get_info_extractor(key))
        except (AttributeError, KeyError):
            logger.warning(f"⚠️ Unknown yt-dlp extractor in PLATFORM_EXTRACTORS: {key}")
    return tuple(extractors)


def is_platform_url(url: str, extractor_keys: Optional[List[str]] = None) -> bool:
    """
    Check whether a yt-dlp platform extractor accepts the URL.

    Example:
        >>> is_platform_url("https://www.youtube.com/watch?v=dQw4w9WgXcQ")
        True
    """
    if not url:
        return False
    keys = tuple(extractor_keys or settings.PLATFORM_EXTRACTORS)
    for ie in _platform_extractors(keys):
        try:
            if ie.suitable(url):
                return True
        except Exception:
            continue
    return False

# ============================================================================
# Format catalog
# ============================================================================

def make_format_key(page_url: str, format_id: str) -> str:
    return f"{page_url.split('#', 1)[0]}{FORMAT_KEY_MARKER}{format_id}"


def split_format_key(source_url: str) -> Tuple[str, Optional[str]]:
    """
    Recover the page URL and format id from a platform candidate's source_url.

    Example:
        >>> split_format_key("https://youtu.be/x#format_id=18")
        ('https://youtu.be/x', '18')
    """
    page_url, marker, format_id = source_url.rpartition(FORMAT_KEY_MARKER)
    if not marker:
        return source_url, None
    return page_url, format_id or None


def _transport_status(exc: BaseException) -> Optional[int]:
    """Find an HTTP status on the error or on anything it wraps."""
    seen = set()
    pending = [exc]
    while pending:
        err = pending.pop(0)
        if err is None or id(err) in seen:
            continue
        seen.add(id(err))

        response = getattr(err, 'response', None)
        for value in (
            getattr(err, 'status', None),
            getattr(err, 'code', None),
            getattr(response, 'status_code', None),
            getattr(response, 'status', None),
        ):
            if isinstance(value, int) and 100 <= value < 600:
                return value

        exc_info = getattr(err, 'exc_info', None)
        if isinstance(exc_info, tuple) and len(exc_info) > 1:
            pending.append(exc_info[1])
        pending.extend([getattr(err, 'cause', None), err.__cause__, err.__context__])

    match = HTTP_STATUS_REGEX.search(str(exc))
    return int(match.group(1)) if match else None


def classify_platform_error(exc: BaseException) -> PlatformError:
    """Map a catalog or stream failure onto restricted / rate-limited / generic."""
    if isinstance(exc, PlatformError):
        return exc

    status = _transport_status(exc)
    text = str(exc).lower()

    if status in RATE_LIMIT_STATUSES or any(sig in text for sig in RATE_LIMIT_SIGNATURES):
        return PlatformRateLimitedError()
    if status in RESTRICTED_STATUSES or any(sig in text for sig in RESTRICTED_SIGNATURES):
        return PlatformRestrictedError()
    return PlatformProcessingError()


def _ydl_options() -> Dict:
    return {
        'quiet': True,
        'no_warnings': True,
        'noplaylist': True,
        'skip_download': True,
        'http_headers': {'User-Agent': settings.USER_AGENT},
    }


def fetch_catalog(url: str, agent: AuthenticatedAgent = UNAUTHENTICATED) -> Dict:
    """
    Query the platform's format catalog.

    Raises:
        PlatformRestrictedError, PlatformRateLimitedError, PlatformProcessingError
    """
    try:
        with YoutubeDL(_ydl_options()) as ydl:
            agent.install(ydl.cookiejar)
            info = ydl.extract_info(url, download=False)
    except Exception as e:
        logger.error(f"Platform error: {e}")
        raise classify_platform_error(e) from e

    if not info:
        raise PlatformProcessingError()
    return info


def has_audio_and_video(fmt: Dict) -> bool:
    return fmt.get('vcodec') not in (None, 'none') and fmt.get('acodec') not in (None, 'none')


def select_formats(info: Dict) -> List[Dict]:
    """
    Formats with both tracks, preferring progressive mp4.

    Falls back to any format with both tracks when the strict filter is empty.
    """
    formats = info.get('formats') or []
    muxed = [f for f in formats if has_audio_and_video(f)]
    strict = [
        f for f in muxed
        if f.get('ext') in settings.PREFERRED_CONTAINERS
        and (f.get('protocol') or 'https') in PROGRESSIVE_PROTOCOLS
    ]
    return strict or muxed


def find_format(info: Dict, format_id: Optional[str]) -> Optional[Dict]:
    """Selected format by id; without an id, the last (best) retained format."""
    if format_id:
        for fmt in info.get('formats') or []:
            if str(fmt.get('format_id')) == format_id:
                return fmt
        return None
    retained = select_formats(info)
    return retained[-1] if retained else None


def best_thumbnail(info: Dict) -> Optional[str]:
    if info.get('thumbnail'):
        return info['thumbnail']
    thumbnails = info.get('thumbnails') or []
    return thumbnails[-1].get('url') if thumbnails else None


def quality_label(fmt: Dict) -> str:
    if fmt.get('format_note'):
        return str(fmt['format_note'])
    if fmt.get('height'):
        return f"{fmt['height']}p"
    return fmt.get('resolution') or 'Unknown'


def candidates_from_catalog(page_url: str, info: Dict) -> List[VideoCandidate]:
    thumbnail = best_thumbnail(info)
    candidates = []
    for fmt in select_formats(info):
        size = fmt.get('filesize') or fmt.get('filesize_approx')
        candidates.append(VideoCandidate(
            source_url=make_format_key(page_url, str(fmt['format_id'])),
            kind=Kind.PLATFORM,
            media_type=f"video/{fmt.get('ext') or 'mp4'}",
            size_bytes=int(size) if size else None,
            quality=quality_label(fmt),
            thumbnail=thumbnail,
        ))
    return candidates


def resolve_platform_candidates(
    page_url: str,
    session_factory: Optional[Callable] = None,
) -> List[VideoCandidate]:
    """
    Resolve the downloadable formats of a platform-hosted video.

    Raises:
        PlatformError subclasses when the catalog query fails or has nothing
        with both audio and video
    """
    logger.info("Detected platform URL, fetching info with cookies...")
    agent = resolve_agent(page_url, session_factory=session_factory)
    info = fetch_catalog(page_url, agent)

    candidates = candidates_from_catalog(page_url, info)
    if not candidates:
        raise PlatformProcessingError("No format with both audio and video is available.")

    logger.info(f"Found {len(candidates)} platform formats")
    return candidates
