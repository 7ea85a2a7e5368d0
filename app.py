from flask import Flask, Response, jsonify, request, stream_with_context
from werkzeug.exceptions import HTTPException
import threading
from contextlib import contextmanager

import logging

import settings
from errors import InvalidPageUrlError, MediaHunterError, ServerBusyError
from ffmpeg_remux import ensure_scratch_dir
from media_capture import discover_media
from media_delivery import deliver
from platform_resolver import is_platform_url, resolve_platform_candidates

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Every discovery and download owns a browser and maybe an ffmpeg process
_job_slots = threading.BoundedSemaphore(settings.MAX_CONCURRENT_JOBS)


@contextmanager
def job_slot(timeout: float | None = None):
    """Admission control: hold one of MAX_CONCURRENT_JOBS slots."""
    timeout = settings.ADMISSION_TIMEOUT_SECONDS if timeout is None else timeout
    if not _job_slots.acquire(timeout=timeout):
        raise ServerBusyError()
    try:
        yield
    finally:
        _job_slots.release()


@app.errorhandler(MediaHunterError)
def handle_media_error(error: MediaHunterError):
    logger.warning(f"❌ {type(error).__name__}: {error}")
    return jsonify({"ok": False, "error": str(error)}), error.status_code


@app.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.error(f"❌ Unexpected error on {request.path}: {error}", exc_info=True)
    return jsonify({"ok": False, "error": f"Failed to process request: {error}"}), 500

# ---------------- Routes ----------------
@app.route("/api/health", methods=["GET"])
def health():
    return jsonify({
        "ok": True,
        "backend": settings.BROWSER_BACKEND,
        "ffmpeg": settings.FFMPEG_PATH,
        "scratch_dir": settings.SCRATCH_DIR,
    })


@app.route("/api/resolve", methods=["GET"])
def resolve():
    """Discover downloadable videos on the page given by ?url=."""
    target_url = (request.args.get("url") or "").strip()
    if not target_url:
        raise InvalidPageUrlError("URL is required")

    with job_slot():
        if is_platform_url(target_url):
            videos = resolve_platform_candidates(target_url)
        else:
            videos = discover_media(target_url)

    logger.info(f"Found {len(videos)} videos")
    return jsonify({"ok": True, "videos": [v.to_dict() for v in videos]})


@app.route("/api/download", methods=["GET"])
def download():
    """Stream one candidate; ?url= (or videoUrl) and ?kind= (or type)."""
    video_url = (request.args.get("url") or request.args.get("videoUrl") or "").strip()
    kind = (request.args.get("kind") or request.args.get("type") or "").strip()
    if not video_url or not kind:
        raise InvalidPageUrlError("Missing videoUrl or type")

    # The slot covers the browser and ffmpeg work, not the client's read speed
    with job_slot():
        delivery = deliver(video_url, kind)

    response = Response(
        stream_with_context(iter(delivery)),
        headers=delivery.headers(),
        direct_passthrough=True,
    )
    response.call_on_close(delivery.close)
    return response


ensure_scratch_dir()

if __name__ == "__main__":
    logger.info(f"🚀 Server running on http://{settings.HOST}:{settings.PORT}")
    logger.info(f"📁 Temp directory: {settings.SCRATCH_DIR}")
    logger.info(f"🎬 FFmpeg path: {settings.FFMPEG_PATH}")
    logger.info(f"🌍 Browser backend: {settings.BROWSER_BACKEND}")
    app.run(debug=False, threaded=True, host=settings.HOST, port=settings.PORT)
