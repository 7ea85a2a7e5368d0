"""
Error taxonomy shared by discovery, platform resolution and delivery.

MediaHunterError subclasses are surfaced to the client as JSON with their
status code. NavigationError is internal: discovery logs it and keeps going.
"""


class MediaHunterError(Exception):
    """Base class for errors reported to the caller."""

    status_code = 500
    message = "Request failed."

    def __init__(self, message=None):
        super().__init__(message or self.message)

    @property
    def detail(self) -> str:
        return str(self)


class InvalidPageUrlError(MediaHunterError):
    status_code = 400
    message = "URL is required and must start with http:// or https://"


class NoMediaFoundError(MediaHunterError):
    status_code = 404
    message = "No downloadable video found on this page. It might be encrypted (DRM) or unsupported."


class BrowserLaunchError(MediaHunterError):
    status_code = 500
    message = "Failed to start the browser."


class UnsupportedKindError(MediaHunterError):
    status_code = 400
    message = "Unsupported video type."


class ServerBusyError(MediaHunterError):
    status_code = 503
    message = "Too many active jobs. Please try again shortly."


class DownloadFailedError(MediaHunterError):
    status_code = 502
    message = "Download failed."


# ---------------- Platform-hosted video ----------------

class PlatformError(MediaHunterError):
    status_code = 500
    message = "Failed to process platform video."


class PlatformRestrictedError(PlatformError):
    status_code = 403
    message = "Video is age-restricted or private/deleted."


class PlatformRateLimitedError(PlatformError):
    status_code = 429
    message = "Too many requests. Please try again later."


class PlatformProcessingError(PlatformError):
    pass

# ---------------- Adaptive streams ----------------

class InvalidPlaylistError(MediaHunterError):
    status_code = 400
    message = "Invalid M3U8 stream - the file does not contain valid HLS playlist data."


class TranscodeError(MediaHunterError):
    status_code = 500
    message = "Video conversion failed."

    def __init__(self, message=None, category: str = "generic"):
        super().__init__(message)
        self.category = category


class TranscodeSpawnError(TranscodeError):
    message = "Failed to start video conversion process."

    def __init__(self, message=None):
        super().__init__(message, category="spawn")

# ---------------- Browser navigation (suppressed) ----------------

class NavigationError(Exception):
    """Page navigation failed; traffic captured so far is still usable."""


class NavigationTimeout(NavigationError):
    """Page navigation exceeded its timeout."""
