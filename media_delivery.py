"""
Delivery Dispatcher

Routes a download by candidate kind:

- direct: proxy the upstream bytes unchanged
- platform: fresh cookies, fresh catalog, then the selected format's bytes
- adaptive: remux to a scratch MP4, stream it, delete it after a grace delay

Every path returns a Delivery: response headers plus a chunk iterator whose
close() releases the upstream connection or schedules the artifact deletion.

License: MIT
"""

import logging
import threading
from typing import Callable, Dict, Iterable, Iterator, Optional

import requests

import settings
from errors import DownloadFailedError, PlatformProcessingError, UnsupportedKindError
from ffmpeg_remux import remove_artifact, remux_playlist
from media_sniffer_utils import DIRECT_EXTENSIONS, Kind, url_extension
from platform_resolver import (
    classify_platform_error,
    fetch_catalog,
    find_format,
    resolve_agent,
    split_format_key,
)

# Configure logging
logger = logging.getLogger(__name__)

# ============================================================================
# Delivery
# ============================================================================

class Delivery:
    """
    A ready-to-stream download.

    Iterating yields the body; close() runs the cleanup exactly once, whether
    the body was fully read, abandoned mid-way or never started.
    """

    def __init__(
        self,
        chunks: Iterable[bytes],
        content_type: str,
        filename: str,
        content_length: Optional[int] = None,
        on_close: Optional[Callable[[], None]] = None,
    ):
        self._chunks = chunks
        self.content_type = content_type
        self.filename = filename
        self.content_length = content_length
        self._on_close = on_close
        self._closed = False
        self._lock = threading.Lock()

    def headers(self) -> Dict[str, str]:
        headers = {
            'Content-Disposition': f'attachment; filename="{self.filename}"',
            'Content-Type': self.content_type,
        }
        if self.content_length is not None:
            headers['Content-Length'] = str(self.content_length)
        return headers

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self._chunks:
                if chunk:
                    yield chunk
        finally:
            self.close()

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self._on_close:
            self._on_close()


def schedule_deletion(path: str, delay: Optional[float] = None) -> threading.Timer:
    """Delete path after delay seconds so a still-flushing handle is not raced."""
    delay = settings.CLEANUP_GRACE_SECONDS if delay is None else delay
    timer = threading.Timer(delay, remove_artifact, args=(path,))
    timer.daemon = True
    timer.start()
    return timer

# ============================================================================
# Paths
# ============================================================================

def _upstream_chunks(upstream: requests.Response) -> Iterator[bytes]:
    try:
        yield from upstream.iter_content(settings.STREAM_CHUNK_SIZE)
    except requests.RequestException as e:
        logger.error(f"Upstream stream broke: {e}")
        raise DownloadFailedError() from e


def _open_upstream(url: str, **kwargs) -> requests.Response:
    upstream = requests.get(url, stream=True, timeout=settings.HTTP_TIMEOUT, **kwargs)
    try:
        upstream.raise_for_status()
    except requests.HTTPError:
        upstream.close()
        raise
    return upstream


def deliver_direct(url: str) -> Delivery:
    try:
        upstream = _open_upstream(url, headers={'User-Agent': settings.USER_AGENT})
    except requests.RequestException as e:
        logger.error(f"Download error: {e}")
        raise DownloadFailedError() from e

    ext = url_extension(url)
    filename = f"video{ext}" if ext in DIRECT_EXTENSIONS else "video.mp4"
    return Delivery(
        chunks=_upstream_chunks(upstream),
        content_type=upstream.headers.get('content-type') or 'video/mp4',
        filename=filename,
        on_close=upstream.close,
    )


def _file_chunks(handle) -> Iterator[bytes]:
    while True:
        chunk = handle.read(settings.STREAM_CHUNK_SIZE)
        if not chunk:
            break
        yield chunk


def deliver_adaptive(url: str, headers: Optional[Dict[str, str]] = None) -> Delivery:
    """
    Remux the playlist, then stream the finished artifact.

    Nothing is returned before the artifact passed validation, so the caller
    can send a Content-Length.
    """
    job = remux_playlist(url, headers=headers)

    try:
        handle = open(job.output_path, 'rb')
    except OSError as e:
        remove_artifact(job.output_path)
        raise DownloadFailedError("Error streaming video file.") from e

    def cleanup():
        handle.close()
        logger.info("File streaming completed")
        schedule_deletion(job.output_path)

    return Delivery(
        chunks=_file_chunks(handle),
        content_type='video/mp4',
        filename='video.mp4',
        content_length=job.size_bytes,
        on_close=cleanup,
    )


def _cookie_header(agent) -> Dict[str, str]:
    if not agent.is_authenticated:
        return {}
    return {'Cookie': '; '.join(f"{c.name}={c.value}" for c in agent.cookies)}


def deliver_platform(source_url: str, session_factory: Optional[Callable] = None) -> Delivery:
    page_url, format_id = split_format_key(source_url)
    logger.info(f"Downloading platform video: {page_url} (format: {format_id})")

    agent = resolve_agent(page_url, session_factory=session_factory)
    info = fetch_catalog(page_url, agent)
    fmt = find_format(info, format_id)
    if fmt is None or not fmt.get('url'):
        raise PlatformProcessingError("The selected format is no longer available.")

    headers = {str(k): str(v) for k, v in (fmt.get('http_headers') or {}).items()}
    protocol = fmt.get('protocol') or 'https'
    if protocol.startswith('m3u8'):
        headers.update(_cookie_header(agent))
        return deliver_adaptive(fmt['url'], headers=headers)

    try:
        upstream = _open_upstream(fmt['url'], headers=headers, cookies=agent.requests_cookies())
    except requests.RequestException as e:
        logger.error(f"Platform download error: {e}")
        raise classify_platform_error(e) from e

    ext = fmt.get('ext') or 'mp4'
    return Delivery(
        chunks=_upstream_chunks(upstream),
        content_type=upstream.headers.get('content-type') or f'video/{ext}',
        filename=f"video.{ext}",
        on_close=upstream.close,
    )

# ============================================================================
# Dispatcher
# ============================================================================

def deliver(source_url: str, kind, session_factory: Optional[Callable] = None) -> Delivery:
    """
    Open the download for a candidate.

    Args:
        source_url: The candidate's source_url
        kind: Kind or its string value
        session_factory: Browser session factory for the platform path

    Raises:
        UnsupportedKindError: For an unknown kind
        MediaHunterError subclasses from the selected path
    """
    try:
        kind = Kind(kind)
    except ValueError:
        raise UnsupportedKindError() from None

    if kind is Kind.DIRECT:
        return deliver_direct(source_url)
    if kind is Kind.PLATFORM:
        return deliver_platform(source_url, session_factory=session_factory)
    return deliver_adaptive(source_url)
