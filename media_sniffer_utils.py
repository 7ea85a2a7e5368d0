"""
Media Sniffer Utilities Module

Provides the pure helpers used by discovery: classifying a network exchange as
a direct video file, an HLS playlist or noise, telling master manifests from
renditions, and the VideoCandidate / Exchange records passed between modules.

Rule ordering in classify_resource matters: extension checks run before the
content-type checks because servers mislabel content types, and the noise
extensions are rejected before any pattern matching.

License: MIT
"""

import re
import posixpath
import logging
import urllib.parse
from enum import Enum
from typing import Dict, Optional
from dataclasses import dataclass, field

# Configure logging
logger = logging.getLogger(__name__)

# ============================================================================
# Kinds and extension tables
# ============================================================================

class Kind(str, Enum):
    """Delivery path for a candidate."""
    DIRECT = "direct"
    ADAPTIVE = "adaptive"
    PLATFORM = "platform"


# Fonts, stylesheets, scripts, structured data and plain text
NOISE_EXTENSIONS = {
    '.woff', '.woff2', '.ttf', '.otf', '.eot',
    '.css',
    '.js', '.mjs',
    '.json', '.xml',
    '.txt',
}

DIRECT_EXTENSIONS = {'.mp4', '.webm', '.mkv', '.mov', '.avi'}

PLAYLIST_EXTENSION = '.m3u8'
SEGMENT_EXTENSION = '.ts'

# Path tokens that mark an HLS playlist served without the .m3u8 extension
PLAYLIST_MARKER_TOKENS = ('m3u8', 'playlist', 'master', 'index')

# Marker matches on these are web documents or text, never playlists
MARKER_EXCLUDED_EXTENSIONS = {'.txt', '.html', '.htm', '.php', '.asp', '.aspx'}

# Content-Type patterns for HLS streams
HLS_CONTENT_TYPES = (
    'application/vnd.apple.mpegurl',
    'application/x-mpegurl',
    'audio/x-mpegurl',
    'audio/mpegurl',
    'application/mpegurl',
)

DIRECT_CONTENT_TYPES = ('video/mp4', 'video/webm', 'video/ogg')

NOISE_CONTENT_TYPES = ('font', 'woff', 'text/plain')

# Tokens marking a top-level (master) manifest rather than one rendition
MASTER_MANIFEST_TOKENS = ('master', 'playlist', 'index', 'manifest')

RENDITION_RESOLUTION_REGEX = re.compile(r'(?<![0-9])(2160|1440|1080|720|540|480|360|240|144)p?(?![0-9])')

CONTENT_RANGE_TOTAL_REGEX = re.compile(r'/\s*(\d+)\s*$')

# ============================================================================
# Records
# ============================================================================

@dataclass
class Exchange:
    """One completed network response observed by a browser session."""
    url: str
    status: int
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get('content-type') or None

    @property
    def declared_size(self) -> Optional[int]:
        """
        Total byte size the server declared for the resource.

        A Content-Range total wins over Content-Length, since a 206 response's
        Content-Length only covers the returned slice.
        """
        content_range = self.headers.get('content-range')
        if content_range:
            match = CONTENT_RANGE_TOTAL_REGEX.search(content_range)
            if match:
                return int(match.group(1))
        return parse_content_length(self.headers.get('content-length'))


@dataclass
class VideoCandidate:
    """A discovered or derived media reference."""
    source_url: str
    kind: Kind
    media_type: Optional[str] = None
    size_bytes: Optional[int] = None
    quality: Optional[str] = None
    thumbnail: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            'videoUrl': self.source_url,
            'type': self.kind.value,
            'contentType': self.media_type,
            'sizeBytes': self.size_bytes,
            'size': human_size(self.size_bytes, self.kind),
            'quality': self.quality,
            'thumbnail': self.thumbnail,
        }

# ============================================================================
# Classification
# ============================================================================

def url_extension(url: str) -> str:
    """
    Lower-cased extension of the URL path, query string and fragment removed.

    Example:
        >>> url_extension("https://cdn.example.com/v/Clip.MP4?sig=1")
        '.mp4'
    """
    path = urllib.parse.urlsplit(url or '').path
    return posixpath.splitext(path.lower())[1]


def is_hls_content_type(content_type: Optional[str]) -> bool:
    """
    Check if content-type indicates HLS stream.

    Args:
        content_type: HTTP Content-Type header value

    Returns:
        True if content-type matches HLS patterns
    """
    if not content_type:
        return False
    content_type_lower = content_type.lower()
    return any(ct in content_type_lower for ct in HLS_CONTENT_TYPES)


def classify_resource(url: str, content_type: Optional[str] = None) -> Optional[Kind]:
    """
    Classify a network exchange as a video candidate or noise.

    Args:
        url: The exchange's effective URL
        content_type: Declared Content-Type header, if any

    Returns:
        Kind.DIRECT, Kind.ADAPTIVE, or None for anything else

    Example:
        >>> classify_resource("https://example.com/a.m3u8")
        <Kind.ADAPTIVE: 'adaptive'>
        >>> classify_resource("https://example.com/seg3.ts") is None
        True
    """
    ext = url_extension(url)

    if ext in NOISE_EXTENSIONS:
        return None

    if ext in DIRECT_EXTENSIONS:
        return Kind.DIRECT

    if ext == PLAYLIST_EXTENSION:
        return Kind.ADAPTIVE

    # Segments are never the answer, only the playlist that lists them
    if ext == SEGMENT_EXTENSION:
        return None

    path = urllib.parse.urlsplit(url or '').path.lower()
    if any(token in path for token in PLAYLIST_MARKER_TOKENS):
        if ext not in MARKER_EXCLUDED_EXTENSIONS:
            return Kind.ADAPTIVE

    if content_type:
        content_type = content_type.lower()
        if any(ct in content_type for ct in DIRECT_CONTENT_TYPES):
            return Kind.DIRECT
        if is_hls_content_type(content_type):
            return Kind.ADAPTIVE
        if any(ct in content_type for ct in NOISE_CONTENT_TYPES):
            return None
        if content_type.startswith('video/') and 'html' not in content_type:
            return Kind.DIRECT

    return None


def is_master_manifest(url: str) -> bool:
    """
    Heuristic to detect if URL is a master playlist vs a rendition.

    Args:
        url: m3u8 URL to analyze

    Returns:
        True if likely a master playlist
    """
    url_lower = (url or '').lower()

    # Kaltura playmanifest is always master
    if 'playmanifest' in url_lower:
        return True

    return any(token in url_lower for token in MASTER_MANIFEST_TOKENS)


def rendition_label(url: str) -> str:
    """Resolution label like '720p' when the URL carries one, else 'Variant'."""
    path = urllib.parse.urlsplit(url or '').path
    match = RENDITION_RESOLUTION_REGEX.search(path)
    if match:
        return f"{match.group(1)}p"
    return 'Variant'

# ============================================================================
# Formatting
# ============================================================================

def parse_content_length(value) -> Optional[int]:
    if value is None:
        return None
    try:
        size = int(str(value).strip())
    except ValueError:
        return None
    return size if size >= 0 else None


def human_size(size_bytes: Optional[int], kind: Optional[Kind] = None) -> str:
    """
    Human readable size as shown to clients.

    Example:
        >>> human_size(5 * 1024 * 1024)
        '5.00 MB'
    """
    if kind is Kind.ADAPTIVE:
        return 'HLS Stream'
    if size_bytes is None:
        return 'Unknown'
    return f"{size_bytes / 1024 / 1024:.2f} MB"


def dedupe_preserving_order(urls) -> list:
    return list(dict.fromkeys(u for u in urls if u))


def normalize_page_url(url: Optional[str]) -> Optional[str]:
    """
    Strip a page URL and check it is an absolute http(s) URL.

    Returns:
        The stripped URL, or None when it is empty or unusable
    """
    url = (url or '').strip()
    parsed = urllib.parse.urlsplit(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        return None
    return url
