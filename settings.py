"""
Runtime configuration.

Every value is a module-level constant with an environment override, so the
other modules can import the defaults and tests can pass explicit values.
"""

import os
import shutil

# ============================================================================
# Helpers
# ============================================================================

def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default):
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]

# ============================================================================
# Browser
# ============================================================================

USER_AGENT = os.getenv(
    "USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)

# "playwright" or "selenium"
BROWSER_BACKEND = os.getenv("BROWSER_BACKEND", "playwright").strip().lower()
HEADLESS = _env_bool("HEADLESS", True)

# Use a system Chrome/Chromium instead of the one bundled with the driver
BROWSER_EXECUTABLE_PATH = os.getenv("BROWSER_EXECUTABLE_PATH") or os.getenv("CHROME_BIN") or None

BROWSER_ARGS = _env_list("CHROME_ARGS", [
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-dev-shm-usage',
    '--disable-accelerated-2d-canvas',
    '--no-first-run',
    '--no-default-browser-check',
    '--disable-gpu',
    '--disable-extensions',
    '--disable-sync',
    '--mute-audio',
    '--autoplay-policy=no-user-gesture-required',
])

NAVIGATION_TIMEOUT_MS = _env_int("NAVIGATION_TIMEOUT_MS", 30000)
SETTLE_SECONDS = _env_float("SETTLE_SECONDS", 5.0)

# Direct files below this size are previews, thumbnails or tracking pixels
MIN_DIRECT_BYTES = _env_int("MIN_DIRECT_BYTES", 2 * 1024 * 1024)

CONSENT_SELECTORS = [
    'button[aria-label="Accept all"]',
    'button[aria-label="Agree to the use of cookies and other data for the purposes described"]',
]
CONSENT_SETTLE_SECONDS = 1.0

# ============================================================================
# Platform-hosted video (yt-dlp)
# ============================================================================

# yt-dlp extractor keys treated as platforms; "*" accepts any non-generic one
PLATFORM_EXTRACTORS = _env_list("PLATFORM_EXTRACTORS", ["Youtube"])
PREFERRED_CONTAINERS = ("mp4",)

# ============================================================================
# Transcoding (ffmpeg)
# ============================================================================

FFMPEG_PATH = os.getenv("FFMPEG_PATH") or shutil.which("ffmpeg") or "ffmpeg"
TRANSCODE_TIMEOUT_SECONDS = _env_float("DOWNLOAD_TIMEOUT_SECONDS", 300.0)
FFMPEG_RW_TIMEOUT_US = _env_int("FFMPEG_RW_TIMEOUT_US", 60_000_000)
FFMPEG_RECONNECT_DELAY_MAX = 5
MIN_ARTIFACT_BYTES = _env_int("MIN_ARTIFACT_BYTES", 1024)

PLAYLIST_PROBE_BYTES = 1024
PLAYLIST_PROBE_TIMEOUT = 10
PLAYLIST_HEADER = "#EXTM3U"

SCRATCH_DIR = os.getenv(
    "SCRATCH_DIR",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "temp"),
)
CLEANUP_GRACE_SECONDS = _env_float("CLEANUP_GRACE_SECONDS", 2.0)

# ============================================================================
# HTTP
# ============================================================================

HTTP_TIMEOUT = _env_int("HTTP_TIMEOUT", 30)
STREAM_CHUNK_SIZE = 64 * 1024

MAX_CONCURRENT_JOBS = _env_int("MAX_CONCURRENT_JOBS", 4)
ADMISSION_TIMEOUT_SECONDS = _env_float("ADMISSION_TIMEOUT_SECONDS", 30.0)

HOST = os.getenv("HOST", "127.0.0.1")
PORT = _env_int("PORT", 3000)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
