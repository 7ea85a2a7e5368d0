"""
Shared fixtures: a local HTTP server with sample HLS manifests and a video
file, a scriptable fake browser session, and a fake ffmpeg executable.
"""

import os
import sys
import stat
import logging
import functools
import textwrap
import threading
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer

import pytest

from media_capture import DOM_PLAYLIST_SCAN_JS, PAGE_THUMBNAIL_JS

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Sample HLS manifests
MASTER_MANIFEST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-STREAM-INF:BANDWIDTH=2000000,RESOLUTION=1280x720,CODECS="avc1.64001f,mp4a.40.2"
variant_720p.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=800000,RESOLUTION=640x360,CODECS="avc1.64001e,mp4a.40.2"
variant_360p.m3u8
"""

VARIANT_720P = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:10
#EXT-X-MEDIA-SEQUENCE:0
#EXTINF:10.0,
segment0.ts
#EXTINF:5.0,
segment1.ts
#EXT-X-ENDLIST
"""

HTML_PAGE_WITH_VIDEO = """<!DOCTYPE html>
<html>
<head>
    <title>Test Video Page</title>
    <meta property="og:image" content="https://img.example.com/poster.jpg">
</head>
<body>
    <video src="/y.mp4" preload="auto" autoplay muted></video>
</body>
</html>
"""

HTML_PAGE_WITH_INLINE_PLAYLIST = """<!DOCTYPE html>
<html>
<head><title>Inline Player Config</title></head>
<body>
    <div id="player"></div>
    <script>
        var playerConfig = {"src": "https://cdn.example.invalid/live/stream.m3u8?token=abc"};
    </script>
</body>
</html>
"""

VIDEO_SIZE = 5 * 1024 * 1024


class MediaHandler(SimpleHTTPRequestHandler):
    """Serves m3u8 files with the HLS Content-Type."""

    def guess_type(self, path):
        if str(path).endswith('.m3u8'):
            return 'application/vnd.apple.mpegurl'
        return super().guess_type(path)

    def log_message(self, format, *args):
        logger.debug(f"[HTTP] {format % args}")


class MediaServer:
    def __init__(self, root):
        self.root = root
        handler = functools.partial(MediaHandler, directory=str(root))
        self.server = ThreadingHTTPServer(('127.0.0.1', 0), handler)
        self.server.daemon_threads = True
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)

    def url(self, name: str) -> str:
        return f"{self.base_url}/{name}"

    def start(self):
        self.thread.start()
        logger.info(f"✅ Test server ready at {self.base_url}")

    def stop(self):
        self.server.shutdown()
        self.server.server_close()


@pytest.fixture
def media_server(tmp_path):
    root = tmp_path / "site"
    root.mkdir()
    (root / "master.m3u8").write_text(MASTER_MANIFEST)
    (root / "variant_720p.m3u8").write_text(VARIANT_720P)
    (root / "not_a_playlist.m3u8").write_text("<html><body>Gone</body></html>")
    (root / "index.html").write_text(HTML_PAGE_WITH_VIDEO)
    (root / "inline.html").write_text(HTML_PAGE_WITH_INLINE_PLAYLIST)
    (root / "y.mp4").write_bytes(b"\x00" * VIDEO_SIZE)

    server = MediaServer(root)
    server.start()
    yield server
    server.stop()

# ============================================================================
# Fake browser session
# ============================================================================

class FakeSession:
    """
    Stands in for a browser session.

    Exchanges are delivered to the observer during navigate(), as a real page
    load would.
    """

    backend = "fake"

    def __init__(self, exchanges=(), dom_urls=(), thumbnail=None,
                 navigate_error=None, wait_error=None, cookies=(), consent_selector=None):
        self.exchanges = list(exchanges)
        self.dom_urls = list(dom_urls)
        self.thumbnail = thumbnail
        self.navigate_error = navigate_error
        self.wait_error = wait_error
        self._cookies = list(cookies)
        self.consent_selector = consent_selector
        self.observers = []
        self.navigated = []
        self.waits = []
        self.dom_scanned = False
        self.close_calls = 0

    def subscribe(self, observer):
        self.observers.append(observer)

    def navigate(self, url, timeout_ms=None):
        self.navigated.append(url)
        for exchange in self.exchanges:
            for observer in self.observers:
                observer(exchange)
        if self.navigate_error:
            raise self.navigate_error

    def wait(self, seconds):
        self.waits.append(seconds)
        if self.wait_error:
            raise self.wait_error

    def evaluate(self, script):
        if script == PAGE_THUMBNAIL_JS:
            return self.thumbnail
        if script == DOM_PLAYLIST_SCAN_JS:
            self.dom_scanned = True
            return list(self.dom_urls)
        return None

    def scroll_to_bottom(self):
        pass

    def cookies(self):
        return list(self._cookies)

    def click_first(self, selectors, timeout_ms=1000):
        if self.consent_selector in selectors:
            return self.consent_selector
        return None

    def close(self):
        self.close_calls += 1


@pytest.fixture
def fake_session():
    """Factory for FakeSession instances."""
    return FakeSession

# ============================================================================
# Fake ffmpeg
# ============================================================================

FAKE_FFMPEG_TEMPLATE = """\
#!{python}
import sys
import time

out = sys.argv[-1]
if {size!r} is not None:
    with open(out, 'wb') as f:
        f.write(b'\\0' * {size!r})
sys.stderr.write({stderr!r})
sys.stderr.flush()
time.sleep({sleep!r})
sys.exit({exit_code!r})
"""


@pytest.fixture
def make_fake_ffmpeg(tmp_path):
    """
    Build an executable that behaves like ffmpeg from the supervisor's view:
    writes size bytes to the last argument, prints stderr, sleeps, exits.
    """
    counter = {'n': 0}

    def _make(size=2_000_000, exit_code=0, stderr="", sleep=0.0):
        counter['n'] += 1
        path = tmp_path / f"fake_ffmpeg_{counter['n']}"
        path.write_text(textwrap.dedent(FAKE_FFMPEG_TEMPLATE).format(
            python=sys.executable,
            size=size,
            exit_code=exit_code,
            stderr=stderr,
            sleep=sleep,
        ))
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


@pytest.fixture
def scratch_dir(tmp_path, monkeypatch):
    import settings
    path = tmp_path / "scratch"
    monkeypatch.setattr(settings, 'SCRATCH_DIR', str(path))
    return path


def scratch_files(path):
    return sorted(os.listdir(path)) if os.path.isdir(path) else []
