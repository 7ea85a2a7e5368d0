"""
Tests for platform-hosted video resolution: cookie capture, catalog queries
through a stand-in YoutubeDL, format selection and error classification.
"""

from http.cookiejar import CookieJar

import pytest
import requests
from yt_dlp.utils import DownloadError

import platform_resolver
import settings
from errors import (
    BrowserLaunchError,
    NavigationError,
    PlatformProcessingError,
    PlatformRateLimitedError,
    PlatformRestrictedError,
)
from media_sniffer_utils import Kind
from platform_resolver import (
    UNAUTHENTICATED,
    AuthenticatedAgent,
    BrowserCookie,
    candidates_from_catalog,
    classify_platform_error,
    find_format,
    is_platform_url,
    make_format_key,
    resolve_agent,
    resolve_platform_candidates,
    select_formats,
    split_format_key,
)

WATCH_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"

SAMPLE_INFO = {
    "id": "dQw4w9WgXcQ",
    "thumbnail": "https://i.ytimg.com/vi/dQw4w9WgXcQ/maxresdefault.jpg",
    "formats": [
        {"format_id": "140", "ext": "m4a", "vcodec": "none", "acodec": "mp4a.40.2", "protocol": "https"},
        {"format_id": "137", "ext": "mp4", "vcodec": "avc1", "acodec": "none", "protocol": "https", "height": 1080},
        {"format_id": "18", "ext": "mp4", "vcodec": "avc1", "acodec": "mp4a.40.2", "protocol": "https",
         "format_note": "360p", "filesize": 12_345_678, "url": "https://rr.googlevideo.com/18"},
        {"format_id": "22", "ext": "mp4", "vcodec": "avc1", "acodec": "mp4a.40.2", "protocol": "https",
         "height": 720, "filesize_approx": 45_000_000, "url": "https://rr.googlevideo.com/22"},
        {"format_id": "96", "ext": "mp4", "vcodec": "avc1", "acodec": "mp4a.40.2", "protocol": "m3u8_native",
         "height": 1080, "url": "https://manifest.googlevideo.com/96.m3u8"},
    ],
}


class FakeYoutubeDL:
    """Records options and cookies, returns a canned catalog or raises."""

    info = SAMPLE_INFO
    error = None
    instances = []

    def __init__(self, params):
        self.params = params
        self.cookiejar = CookieJar()
        self.extracted = []
        type(self).instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def extract_info(self, url, download=True):
        self.extracted.append((url, download))
        if self.error:
            raise self.error
        return self.info


@pytest.fixture
def fake_ydl(monkeypatch):
    class _FakeYoutubeDL(FakeYoutubeDL):
        instances = []

    monkeypatch.setattr(platform_resolver, "YoutubeDL", _FakeYoutubeDL)
    return _FakeYoutubeDL


@pytest.fixture
def agent():
    return AuthenticatedAgent(
        url=WATCH_URL,
        cookies=(BrowserCookie(name="CONSENT", value="YES+1", domain=".youtube.com"),),
    )

# ============================================================================
# Agent
# ============================================================================

def test_resolve_agent_captures_cookies(fake_session):
    session = fake_session(
        cookies=[
            {"name": "CONSENT", "value": "YES+1", "domain": ".youtube.com", "path": "/", "expires": -1},
            {"name": "VISITOR_INFO1_LIVE", "value": "abc", "domain": ".youtube.com",
             "expires": 1893456000, "secure": True, "httpOnly": True},
        ],
        consent_selector=settings.CONSENT_SELECTORS[0],
    )
    agent = resolve_agent(WATCH_URL, session_factory=lambda: session)

    assert agent.is_authenticated
    assert agent.url == WATCH_URL
    assert [c.name for c in agent.cookies] == ["CONSENT", "VISITOR_INFO1_LIVE"]
    assert agent.cookies[0].expires is None
    assert agent.cookies[1].expires == 1893456000
    assert session.waits == [settings.CONSENT_SETTLE_SECONDS]
    assert session.close_calls == 1


def test_resolve_agent_falls_back_when_browser_fails():
    def factory():
        raise BrowserLaunchError("no chromium")

    assert resolve_agent(WATCH_URL, session_factory=factory) is UNAUTHENTICATED


def test_resolve_agent_falls_back_when_navigation_fails(fake_session):
    session = fake_session(navigate_error=NavigationError("net::ERR_NAME_NOT_RESOLVED"))
    agent = resolve_agent(WATCH_URL, session_factory=lambda: session)

    assert agent is UNAUTHENTICATED
    assert not agent.is_authenticated
    assert session.close_calls == 1


def test_agent_cookie_jars(agent):
    jar = agent.install(CookieJar())
    assert [c.name for c in jar] == ["CONSENT"]
    assert agent.requests_cookies().get("CONSENT", domain=".youtube.com") == "YES+1"

# ============================================================================
# Catalog
# ============================================================================

def test_format_key_round_trip():
    key = make_format_key(WATCH_URL, "22")
    assert key == f"{WATCH_URL}#format_id=22"
    assert split_format_key(key) == (WATCH_URL, "22")
    assert split_format_key(WATCH_URL) == (WATCH_URL, None)


def test_select_formats_prefers_progressive_mp4():
    assert [f["format_id"] for f in select_formats(SAMPLE_INFO)] == ["18", "22"]


def test_select_formats_falls_back_to_any_muxed_format():
    info = {"formats": [
        {"format_id": "hls-1", "ext": "mp4", "vcodec": "avc1", "acodec": "mp4a", "protocol": "m3u8_native"},
        {"format_id": "dash-v", "ext": "webm", "vcodec": "vp9", "acodec": "none", "protocol": "https"},
    ]}
    assert [f["format_id"] for f in select_formats(info)] == ["hls-1"]
    assert select_formats({"formats": []}) == []


def test_find_format():
    assert find_format(SAMPLE_INFO, "96")["protocol"] == "m3u8_native"
    assert find_format(SAMPLE_INFO, "999") is None
    assert find_format(SAMPLE_INFO, None)["format_id"] == "22"


def test_candidates_from_catalog():
    candidates = candidates_from_catalog(WATCH_URL, SAMPLE_INFO)

    assert [c.source_url for c in candidates] == [
        f"{WATCH_URL}#format_id=18",
        f"{WATCH_URL}#format_id=22",
    ]
    assert all(c.kind is Kind.PLATFORM for c in candidates)
    assert [c.quality for c in candidates] == ["360p", "720p"]
    assert [c.size_bytes for c in candidates] == [12_345_678, 45_000_000]
    assert all(c.thumbnail == SAMPLE_INFO["thumbnail"] for c in candidates)


def test_resolve_platform_candidates(fake_ydl, agent, monkeypatch):
    monkeypatch.setattr(platform_resolver, "resolve_agent", lambda url, session_factory=None: agent)

    candidates = resolve_platform_candidates(WATCH_URL)

    assert len(candidates) == 2
    assert all(c.quality for c in candidates)
    ydl = fake_ydl.instances[-1]
    assert ydl.extracted == [(WATCH_URL, False)]
    assert ydl.params["noplaylist"] is True
    assert [c.name for c in ydl.cookiejar] == ["CONSENT"]


def test_resolve_platform_candidates_without_muxed_formats(fake_ydl, monkeypatch):
    monkeypatch.setattr(platform_resolver, "resolve_agent", lambda url, session_factory=None: UNAUTHENTICATED)
    fake_ydl.info = {"formats": [{"format_id": "140", "vcodec": "none", "acodec": "mp4a"}]}

    with pytest.raises(PlatformProcessingError):
        resolve_platform_candidates(WATCH_URL)


def test_resolve_platform_candidates_restricted(fake_ydl, monkeypatch):
    monkeypatch.setattr(platform_resolver, "resolve_agent", lambda url, session_factory=None: UNAUTHENTICATED)
    fake_ydl.error = DownloadError("ERROR: [youtube] dQw4w9WgXcQ: Private video. Sign in if you've been granted access")

    with pytest.raises(PlatformRestrictedError) as excinfo:
        resolve_platform_candidates(WATCH_URL)
    assert excinfo.value.status_code == 403

# ============================================================================
# Error classification
# ============================================================================

def test_classify_platform_error_from_status_in_message():
    assert isinstance(classify_platform_error(DownloadError("ERROR: unable to download: HTTP Error 410: Gone")),
                      PlatformRestrictedError)
    assert isinstance(classify_platform_error(DownloadError("ERROR: HTTP Error 429: Too Many Requests")),
                      PlatformRateLimitedError)
    assert isinstance(classify_platform_error(DownloadError("ERROR: Unable to extract player response")),
                      PlatformProcessingError)


def test_classify_platform_error_from_wrapped_transport_error():
    response = requests.Response()
    response.status_code = 403
    cause = requests.HTTPError("forbidden", response=response)
    wrapped = DownloadError("ERROR: unable to download video data", exc_info=(type(cause), cause, None))

    assert isinstance(classify_platform_error(cause), PlatformRestrictedError)
    assert isinstance(classify_platform_error(wrapped), PlatformRestrictedError)


def test_classify_platform_error_passes_platform_errors_through():
    error = PlatformRateLimitedError()
    assert classify_platform_error(error) is error


def test_is_platform_url():
    assert is_platform_url(WATCH_URL)
    assert is_platform_url("https://youtu.be/dQw4w9WgXcQ")
    assert not is_platform_url("https://example.com/watch/1")
    assert not is_platform_url("")


def test_is_platform_url_skips_unknown_extractor_keys():
    keys = ["NoSuchSiteAtAll", "Youtube"]
    assert is_platform_url(WATCH_URL, extractor_keys=keys)
    assert not is_platform_url("https://example.com/watch/1", extractor_keys=["NoSuchSiteAtAll"])
