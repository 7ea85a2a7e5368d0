"""
HLS Remux via FFmpeg

Turns an adaptive playlist into one MP4 in the scratch directory:

    validating -> running -> succeeded | failed | timed_out

The playlist is probed before any process is spawned. FFmpeg stream-copies
both tracks (no re-encode) under a wall-clock limit; when the limit passes the
process is killed. Every path that does not end in success goes through the
same teardown, which kills a live process and deletes the artifact.

License: MIT
"""

import os
import re
import time
import itertools
import logging
import subprocess
from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import requests

import settings
from errors import InvalidPlaylistError, TranscodeError, TranscodeSpawnError

# Configure logging
logger = logging.getLogger(__name__)

_scratch_counter = itertools.count()

# ============================================================================
# Failure classification
# ============================================================================

# Evaluated top-down against ffmpeg's stderr; first match wins
FAILURE_PATTERNS: List[Tuple[Tuple[str, ...], str, str]] = [
    (
        ('Connection refused', 'Network is unreachable'),
        'offline',
        'Cannot connect to video stream. The stream may be offline or blocked.',
    ),
    (
        ('403', 'Forbidden'),
        'forbidden',
        'Access denied to video stream. The stream may require authentication.',
    ),
    (
        ('404', 'Not Found'),
        'expired',
        'Video stream not found. The stream may have expired.',
    ),
    (
        ('timeout', 'timed out'),
        'unstable',
        'Video stream timeout. The stream may be too slow or unstable.',
    ),
]

KILLED_FAILURE = (
    'interrupted',
    'Video conversion was interrupted. The stream may be too large or corrupted.',
)
GENERIC_FAILURE = ('generic', 'Video conversion failed.')
TOO_SMALL_FAILURE = (
    'empty',
    'Video conversion produced invalid file. The stream may be corrupted or empty.',
)
MISSING_OUTPUT_FAILURE = ('missing', 'Video conversion failed to create output file.')


def classify_failure(stderr: str, returncode: Optional[int]) -> Tuple[str, str]:
    """
    Pick the most specific (category, message) for a failed ffmpeg run.

    Example:
        >>> classify_failure("Server returned 403 Forbidden", 1)[0]
        'forbidden'
        >>> classify_failure("", -9)[0]
        'interrupted'
    """
    stderr = stderr or ''
    for patterns, category, message in FAILURE_PATTERNS:
        if any(p in stderr for p in patterns):
            return category, message
    # A negative return code means the process died from a signal
    if returncode is None or returncode < 0:
        return KILLED_FAILURE
    return GENERIC_FAILURE

# ============================================================================
# Job
# ============================================================================

class TranscodeState(str, Enum):
    VALIDATING = "validating"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class TranscodeJob:
    """One ffmpeg remux of input_url into output_path."""
    input_url: str
    output_path: str
    state: TranscodeState = TranscodeState.VALIDATING
    returncode: Optional[int] = None
    stderr: str = ''
    failure: Optional[str] = None
    size_bytes: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def finished(self) -> bool:
        return self.state in (
            TranscodeState.SUCCEEDED,
            TranscodeState.FAILED,
            TranscodeState.TIMED_OUT,
        )


def ensure_scratch_dir(path: Optional[str] = None) -> str:
    path = path or settings.SCRATCH_DIR
    if not os.path.isdir(path):
        os.makedirs(path, exist_ok=True)
        logger.info(f"Created temp directory: {path}")
    return path


def scratch_path(scratch_dir: Optional[str] = None) -> str:
    """Unique artifact path; time_ns plus a process-wide counter never repeats."""
    scratch_dir = ensure_scratch_dir(scratch_dir)
    name = f"video-{time.time_ns()}-{next(_scratch_counter)}.mp4"
    return os.path.join(scratch_dir, name)


def remove_artifact(path: str):
    try:
        os.remove(path)
        logger.info(f"Temp file cleaned up: {path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error(f"Cleanup error: {e}")

# ============================================================================
# Validation
# ============================================================================

def validate_playlist(
    url: str,
    headers: Optional[Dict[str, str]] = None,
    probe_bytes: int = settings.PLAYLIST_PROBE_BYTES,
    timeout: float = settings.PLAYLIST_PROBE_TIMEOUT,
):
    """
    Fetch the first bytes of url and require the #EXTM3U header.

    Raises:
        InvalidPlaylistError: If the URL is unreachable or not a playlist
    """
    logger.info(f"Validating M3U8 URL: {url}")
    request_headers = {'User-Agent': settings.USER_AGENT, 'Range': f'bytes=0-{probe_bytes - 1}'}
    request_headers.update(headers or {})

    try:
        with requests.get(url, headers=request_headers, timeout=timeout, stream=True) as r:
            if r.status_code >= 400:
                raise InvalidPlaylistError(
                    "Invalid M3U8 stream URL. The stream may be expired, "
                    "inaccessible, or not a valid HLS stream."
                )
            head = r.raw.read(probe_bytes, decode_content=True) or b''
    except requests.RequestException as e:
        logger.error(f"M3U8 URL validation failed: {e}")
        raise InvalidPlaylistError(
            "Invalid M3U8 stream URL. The stream may be expired, "
            "inaccessible, or not a valid HLS stream."
        ) from e

    text = head.decode('utf-8', errors='ignore').lstrip('\ufeff \t\r\n')
    logger.debug(f"M3U8 content preview: {text[:200]}")
    if not text.startswith(settings.PLAYLIST_HEADER):
        logger.error("Invalid M3U8 content - does not start with #EXTM3U header")
        raise InvalidPlaylistError()
    logger.info("Valid M3U8 content detected")

# ============================================================================
# FFmpeg
# ============================================================================

def build_ffmpeg_args(
    input_url: str,
    output_path: str,
    headers: Optional[Dict[str, str]] = None,
    ffmpeg_path: Optional[str] = None,
) -> List[str]:
    """
    FFmpeg argv for a stream-copy remux of an HLS playlist into MP4.

    Input options (reconnect, per-connection timeout, headers) precede -i.
    """
    request_headers = {'User-Agent': settings.USER_AGENT}
    request_headers.update(headers or {})
    header_blob = ''.join(f"{k}: {v}\r\n" for k, v in request_headers.items())

    return [
        ffmpeg_path or settings.FFMPEG_PATH,
        '-y',
        '-hide_banner',
        '-loglevel', 'warning', '-stats',
        '-protocol_whitelist', 'file,http,https,tcp,tls,crypto',
        '-reconnect', '1',
        '-reconnect_streamed', '1',
        '-reconnect_delay_max', str(settings.FFMPEG_RECONNECT_DELAY_MAX),
        '-rw_timeout', str(settings.FFMPEG_RW_TIMEOUT_US),
        '-headers', header_blob,
        '-i', input_url,
        '-c', 'copy',
        '-bsf:a', 'aac_adtstoasc',
        '-f', 'mp4',
        '-movflags', '+faststart',
        output_path,
    ]


def parse_ffmpeg_progress(line: str) -> dict:
    """Parse FFmpeg progress line to extract frame, fps, time, bitrate, speed"""
    result = {}
    # FFmpeg outputs like: frame=12345 fps=30 q=-1.0 size=1234kB time=00:12:34.56 bitrate=1234.5kbits/s speed=1.5x
    match = re.search(r'frame=\s*(\d+)', line)
    if match:
        result['frame'] = int(match.group(1))

    match = re.search(r'fps=\s*([\d.]+)', line)
    if match:
        result['fps'] = float(match.group(1))

    match = re.search(r'time=\s*([\d:\.]+)', line)
    if match:
        result['time'] = match.group(1)

    match = re.search(r'bitrate=\s*([\d.]+)\s*kbits/s', line)
    if match:
        result['bitrate'] = f"{match.group(1)} kbps"

    match = re.search(r'speed=\s*([\d.]+)x', line)
    if match:
        result['speed'] = f"{match.group(1)}x"

    return result


def _log_progress(stderr: str):
    for line in re.split(r'[\r\n]+', stderr):
        progress = parse_ffmpeg_progress(line)
        if progress:
            logger.debug(f"FFmpeg progress: {progress}")


def _teardown(job: TranscodeJob, process: Optional[subprocess.Popen]):
    """Kill a live process and delete the artifact unless the job succeeded."""
    if process is not None and process.poll() is None:
        logger.warning("Killing FFmpeg process")
        process.kill()
        try:
            process.communicate(timeout=10)
        except (subprocess.TimeoutExpired, ValueError):
            logger.debug("FFmpeg did not report after kill", exc_info=True)
    if job.state is not TranscodeState.SUCCEEDED:
        remove_artifact(job.output_path)


def run_transcode(
    job: TranscodeJob,
    timeout: Optional[float] = None,
    min_bytes: Optional[int] = None,
    ffmpeg_path: Optional[str] = None,
) -> TranscodeJob:
    """
    Run ffmpeg for job and check the artifact.

    On success job.output_path holds a file larger than min_bytes and the
    caller owns its deletion. Otherwise the artifact is gone and
    TranscodeError is raised with job.state FAILED or TIMED_OUT.
    """
    timeout = settings.TRANSCODE_TIMEOUT_SECONDS if timeout is None else timeout
    min_bytes = settings.MIN_ARTIFACT_BYTES if min_bytes is None else min_bytes

    args = build_ffmpeg_args(job.input_url, job.output_path, job.headers, ffmpeg_path)
    logger.info(f"Starting M3U8 transcoding from: {job.input_url}")
    logger.info(f"Output file: {job.output_path}")
    logger.debug(f"FFmpeg command: {' '.join(args)}")

    job.state = TranscodeState.RUNNING
    process = None
    try:
        try:
            process = subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                encoding='utf-8',
                errors='replace',
            )
        except OSError as e:
            job.state = TranscodeState.FAILED
            job.failure = 'spawn'
            logger.error(f"Failed to start FFmpeg process: {e}")
            raise TranscodeSpawnError() from e

        try:
            _, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"FFmpeg process timeout after {timeout}s - killing process")
            process.kill()
            _, stderr = process.communicate()
            job.state = TranscodeState.TIMED_OUT

        job.stderr = stderr or ''
        job.returncode = process.returncode
        _log_progress(job.stderr)
        logger.info(f"FFmpeg process closed with code: {job.returncode}")

        if job.state is TranscodeState.TIMED_OUT:
            # Killed, so the return code is negative and the fallback is "interrupted"
            job.failure, message = classify_failure(job.stderr, job.returncode)
            raise TranscodeError(message, category=job.failure)

        if job.returncode != 0:
            job.state = TranscodeState.FAILED
            job.failure, message = classify_failure(job.stderr, job.returncode)
            logger.error(f"FFmpeg stderr: {job.stderr[-2000:]}")
            raise TranscodeError(message, category=job.failure)

        if not os.path.exists(job.output_path):
            job.state = TranscodeState.FAILED
            job.failure, message = MISSING_OUTPUT_FAILURE
            raise TranscodeError(message, category=job.failure)

        size = os.path.getsize(job.output_path)
        if size <= min_bytes:
            logger.error(f"Output file is too small: {size} bytes")
            job.state = TranscodeState.FAILED
            job.failure, message = TOO_SMALL_FAILURE
            raise TranscodeError(message, category=job.failure)

        job.size_bytes = size
        job.state = TranscodeState.SUCCEEDED
        logger.info(f"✅ FFmpeg transcoding finished. Output file size: {size / 1024 / 1024:.2f} MB")
        return job
    finally:
        _teardown(job, process)


def remux_playlist(
    input_url: str,
    headers: Optional[Dict[str, str]] = None,
    scratch_dir: Optional[str] = None,
    timeout: Optional[float] = None,
    validate: bool = True,
) -> TranscodeJob:
    """
    Validate then remux an HLS playlist into a scratch MP4.

    Raises:
        InvalidPlaylistError: Before any process is spawned
        TranscodeError: On ffmpeg failure, timeout or a too-small artifact
    """
    job = TranscodeJob(
        input_url=input_url,
        output_path=scratch_path(scratch_dir),
        headers=dict(headers or {}),
    )
    if validate:
        try:
            validate_playlist(input_url, headers=job.headers)
        except InvalidPlaylistError:
            job.state = TranscodeState.FAILED
            job.failure = 'invalid_playlist'
            raise
    return run_transcode(job, timeout=timeout)
