"""Flask application that relays Bilibili videos to BlackBerry-friendly MP4 files."""

import logging
import math
import os
import re
import shutil
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from flask import (  # pylint: disable=import-error
    Flask,
    Response,
    jsonify,
    redirect,
    render_template,
    request,
    url_for,
)
from werkzeug.exceptions import HTTPException  # pylint: disable=import-error

from bilibili import ZONES, BilibiliClient, probe_title
from cache_store import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, CacheStore, Completed
from errors import NotFoundError, RangeNotSatisfiableError, StreamerError, ValidationError
from identifiers import (
    KIND_PGC,
    KIND_SEASON,
    KIND_UGC,
    KIND_URL,
    SourceRef,
    is_short_link,
    parse_identifier,
    validate_content_key,
)
from jobs import OUTCOME_CACHED, STATE_UNKNOWN, JobOrchestrator, JobRequest, query_status
from maintenance import clear_all, delete_one, resolve_artifact
from settings import load_config, normalize_config
from streaming import send_artifact
from tools import Toolbox

logger = logging.getLogger(__name__)

EXTENSION_KEY = "bbbili"
APP_NAME = "BBBili"

_SEARCH_MARKUP = re.compile(r"<[^>]+>")

app = Flask(__name__)
app.json.ensure_ascii = False

_INIT_LOCK = threading.Lock()


@dataclass
class Services:
    """Objects shared by every request."""

    config: Dict[str, Any]
    store: CacheStore
    orchestrator: JobOrchestrator
    client: BilibiliClient


def init_app(
    config: Optional[Dict[str, Any]] = None,
    *,
    client: Optional[BilibiliClient] = None,
    toolbox: Optional[Toolbox] = None,
    spawn=None,
) -> Flask:
    """Install fresh services on ``app`` and index the cache directory.

    Without ``config`` the settings come from :func:`settings.load_config`.
    Calling this again replaces the previous services.
    """

    settings = normalize_config(config) if config is not None else load_config()
    store = CacheStore(settings["cache_dir"])
    store.load()
    client = client or BilibiliClient(settings["sessdata"])
    orchestrator = JobOrchestrator(
        store,
        toolbox or Toolbox(settings),
        client,
        max_concurrent_jobs=settings["max_concurrent_jobs"],
        spawn=spawn,
    )
    app.extensions[EXTENSION_KEY] = Services(settings, store, orchestrator, client)
    return app


def _services() -> Services:
    services = app.extensions.get(EXTENSION_KEY)
    if services is None:
        with _INIT_LOCK:
            services = app.extensions.get(EXTENSION_KEY)
            if services is None:
                init_app()
                services = app.extensions[EXTENSION_KEY]
    return services


@app.context_processor
def inject_globals() -> Dict[str, Any]:
    return {"app_name": APP_NAME}


def _json_error(message: str, status: int) -> Tuple[Response, int]:
    return jsonify({"error": message}), status


def _page_arg(name: str = "pn") -> int:
    return max(request.args.get(name, 1, type=int) or 1, 1)


def format_duration(seconds: Any) -> str:
    """Render a duration in seconds as ``m:ss``."""

    try:
        total = int(seconds)
    except (TypeError, ValueError):
        return "unknown"
    if total < 0:
        return "unknown"
    minutes, remainder = divmod(total, 60)
    return f"{minutes}:{remainder:02d}"


def _video_card(video: Dict[str, Any]) -> Optional[Dict[str, str]]:
    """Reduce a listing item to the id and title the grid needs."""

    video_id = video.get("bvid") or (f"av{video['aid']}" if video.get("aid") else "")
    if not video_id:
        return None
    title = _SEARCH_MARKUP.sub("", str(video.get("title") or "")).strip()
    return {"id": video_id, "title": title or video_id}


def _video_cards(videos: Optional[List[Dict[str, Any]]]) -> List[Dict[str, str]]:
    cards = [_video_card(video) for video in videos or [] if isinstance(video, dict)]
    return [card for card in cards if card is not None]


def _expand_short_link(raw: str) -> str:
    if not is_short_link(raw):
        return raw
    resolved = _services().client.resolve_short_link(raw)
    app.logger.info("Expanded short link %s to %s", raw, resolved)
    return resolved


def _details_redirect(source: SourceRef) -> Response:
    if source.kind == KIND_PGC:
        return redirect(url_for("details_pgc", id=f"ep{source.value}"))
    if source.kind == KIND_SEASON:
        return redirect(url_for("details_pgc", id=f"ss{source.value}"))
    return redirect(url_for("details", id=source.value))


def _resolve_title(source: SourceRef, hint: str) -> str:
    """Return a display title for a raw submission."""

    if hint:
        return hint
    title = None
    if source.kind == KIND_UGC:
        title = _services().client.lookup_title(source.value)
    elif source.kind == KIND_URL:
        title = probe_title(source.value)
    return title or source.video_url()


def _submit(job_request: JobRequest, orig_url: str) -> Response:
    handle = _services().orchestrator.submit(job_request)
    if handle.outcome == OUTCOME_CACHED:
        return redirect(url_for("watch", file=handle.entry.filename))
    return redirect(
        url_for("status", id=handle.key, title=handle.entry.title, origUrl=orig_url)
    )


@app.errorhandler(StreamerError)
def handle_streamer_error(exc: StreamerError):
    """Render a domain error with its HTTP status."""

    if isinstance(exc, RangeNotSatisfiableError):
        return Response(
            "Requested range not satisfiable",
            status=416,
            headers={"Content-Range": f"bytes */{exc.size}", "Accept-Ranges": "bytes"},
            mimetype="text/plain",
        )
    if exc.status_code >= 500:
        app.logger.error("Request to %s failed: %s", request.path, exc.message)
    if request.path.startswith("/jobs"):
        return _json_error(exc.message, exc.status_code)
    return render_template("error.html", message=exc.message), exc.status_code


@app.errorhandler(Exception)
def handle_unexpected_error(exc: Exception):
    """Log anything unexpected and keep serving."""

    if isinstance(exc, HTTPException):
        return exc
    app.logger.exception("Unhandled error while serving %s", request.path)
    return render_template("error.html", message="Internal server error."), 500


@app.route("/", methods=["GET"])
def index():
    """Render the popular videos page."""

    page = _page_arg()
    data = _services().client.popular(page)
    return render_template(
        "index.html",
        videos=_video_cards(data.get("list")),
        page=page,
        has_next=not data.get("no_more", True),
    )


@app.route("/categories", methods=["GET"])
def categories():
    """List the fixed set of zones."""

    return render_template("categories.html", zones=ZONES)


@app.route("/category", methods=["GET"])
def category():
    """Render the newest videos of one zone."""

    rid = request.args.get("rid", type=int)
    if rid is None:
        raise ValidationError("Missing zone id (rid).")
    name = (request.args.get("name") or "").strip() or "Category"
    page = _page_arg()
    data = _services().client.category(rid, page)
    page_info = data.get("page") or {}
    size = page_info.get("size") or 20
    total_pages = math.ceil((page_info.get("count") or 0) / size) if size else 0
    return render_template(
        "category.html",
        videos=_video_cards(data.get("archives")),
        rid=rid,
        name=name,
        page=page,
        has_next=page < total_pages,
    )


@app.route("/timeline", methods=["GET"])
def timeline():
    """Render the bangumi release timeline."""

    return render_template("timeline.html", days=_services().client.timeline())


@app.route("/url_input", methods=["GET"])
def url_input():
    """Render the id/URL entry form."""

    return render_template("url_input.html")


@app.route("/search", methods=["GET"])
def search():
    """Render the search form."""

    return render_template("search.html")


@app.route("/go", methods=["GET"])
def go():
    """Send an id or URL to the page that can handle it."""

    raw = _expand_short_link((request.args.get("id") or "").strip())
    source = parse_identifier(raw)
    if source.kind == KIND_URL:
        return redirect(url_for("download", url=source.value))
    return _details_redirect(source)


@app.route("/search_results", methods=["GET"])
def search_results():
    """Render one page of video search results."""

    keyword = (request.args.get("keyword") or "").strip()
    if not keyword:
        raise ValidationError("Please enter a keyword.")
    page = _page_arg()
    data = _services().client.search(keyword, page)
    return render_template(
        "search_results.html",
        videos=_video_cards(data.get("result")),
        keyword=keyword,
        page=page,
        has_next=page < (data.get("numPages") or 0),
    )


@app.route("/details", methods=["GET"])
def details():
    """Render an upload with one play link per part."""

    raw_id = (request.args.get("id") or "").strip()
    if not raw_id:
        raise ValidationError("Missing video id.")
    source = parse_identifier(raw_id)
    if source.kind != KIND_UGC:
        return _details_redirect(source)
    video = _services().client.video_details(source.value)
    pages = video.get("pages") or [{"cid": video.get("cid"), "part": "P1", "page": 1}]
    return render_template(
        "details.html",
        video=video,
        pages=pages,
        duration=format_duration(video.get("duration")),
        owner=(video.get("owner") or {}).get("name") or "Unknown uploader",
        stat=video.get("stat") or {},
        source_url=f"https://www.bilibili.com/video/{video.get('bvid') or source.value}/",
    )


@app.route("/details_pgc", methods=["GET"])
def details_pgc():
    """Render a bangumi season with one play link per episode."""

    raw_id = (request.args.get("id") or "").strip()
    if not raw_id:
        raise ValidationError("Missing episode or season id.")
    if raw_id.isdigit():
        raw_id = f"ep{raw_id}"
    source = parse_identifier(raw_id)
    client = _services().client
    if source.kind == KIND_PGC:
        season = client.season_details(episode_id=source.value)
    elif source.kind == KIND_SEASON:
        season = client.season_details(season_id=source.value)
    else:
        return _details_redirect(source)
    sections = [
        {"title": section.get("title") or "Other", "episodes": section.get("episodes") or []}
        for section in season.get("section") or []
    ]
    return render_template(
        "details_pgc.html",
        season=season,
        episodes=season.get("episodes") or [],
        sections=sections,
        stat=season.get("stat") or {},
    )


@app.route("/download", methods=["GET"])
def download():
    """Submit a job for a raw id or URL."""

    raw = _expand_short_link((request.args.get("url") or "").strip())
    source = parse_identifier(raw)
    if source.kind in {KIND_PGC, KIND_SEASON}:
        # Episodes need a cid, which only the season page knows.
        return _details_redirect(source)
    title = _resolve_title(source, (request.args.get("title") or "").strip())
    return _submit(JobRequest(source, title), url_for("url_input"))


@app.route("/download_task", methods=["GET"])
def download_task():
    """Submit a job for one part of an upload or one bangumi episode."""

    args = request.args
    kind = (args.get("type") or "").strip().lower()
    title = (args.get("title") or "").strip()
    cid = (args.get("cid") or "").strip()
    if not cid or not title or kind not in {KIND_UGC, KIND_PGC}:
        raise ValidationError("Missing parameters (cid, title, type).")

    if kind == KIND_PGC:
        episode_id = (args.get("ep_id") or "").strip()
        if not episode_id.isdigit():
            raise ValidationError("Missing or invalid episode id.")
        source = parse_identifier(f"ep{episode_id}")
        orig_url = url_for("details_pgc", id=f"ep{episode_id}")
    else:
        video_id = (args.get("bvid") or "").strip()
        if not video_id:
            aid = (args.get("aid") or "").strip()
            video_id = f"av{aid}" if aid else ""
        source = parse_identifier(video_id, page=args.get("page"))
        orig_url = url_for("details", id=source.value)
    return _submit(JobRequest(source, title, cid), orig_url)


@app.route("/status", methods=["GET"])
def status():
    """Report progress of a job; redirect to the player once it is ready."""

    services = _services()
    key = validate_content_key(request.args.get("id"))
    title_hint = (request.args.get("title") or "").strip()
    orig_url = request.args.get("origUrl") or "/"
    if not orig_url.startswith("/"):
        orig_url = "/"

    report = query_status(services.store, key, title_hint or None)
    if report.state == STATUS_COMPLETED:
        return redirect(url_for("watch", file=report.artifact))

    http_status = 200
    if report.state == STATE_UNKNOWN:
        http_status = 404
    elif report.state not in {STATUS_PENDING, STATUS_FAILED}:
        raise StreamerError(f"Unexpected job state {report.state!r}")
    return (
        render_template(
            "status.html",
            report=report,
            title=report.title or title_hint or "Video",
            orig_url=orig_url,
            poll_interval=services.config["poll_interval"],
        ),
        http_status,
    )


def _playable_entry(filename: Optional[str]):
    store = _services().store
    path = resolve_artifact(store, filename)
    key = os.path.basename(path)[:32]
    entry = store.reconcile(key)
    if entry is None or not isinstance(entry.state, Completed):
        raise NotFoundError("The cached video file was not found; it may have been removed.")
    return entry


@app.route("/watch", methods=["GET"])
def watch():
    """Render the page that links the playable file."""

    entry = _playable_entry(request.args.get("file"))
    return render_template("watch.html", entry=entry)


@app.route("/stream/<filename>", methods=["GET"])
def stream(filename: str):
    """Send the cached MP4, honouring Range requests."""

    entry = _playable_entry(filename)
    return send_artifact(entry.artifact_path, request.headers.get("Range"))


@app.route("/list", methods=["GET"])
def cache_list():
    """List the cached videos."""

    return render_template("list.html", entries=_services().store.list_completed())


@app.route("/delete_one", methods=["POST"])
def delete_one_route():
    """Delete one cached video."""

    filename = request.form.get("file") or request.args.get("file")
    if not delete_one(_services().store, filename):
        app.logger.info("Delete requested for %s, which was already gone.", filename)
    return redirect(url_for("cache_list"))


@app.route("/confirm_clear", methods=["GET"])
def confirm_clear():
    """Ask before clearing the cache."""

    return render_template("confirm_clear.html")


@app.route("/clear_cache", methods=["POST"])
def clear_cache():
    """Delete every cached file."""

    report = clear_all(_services().store)
    return render_template("cleared.html", report=report)


@app.route("/jobs", methods=["GET"])
def jobs_index():
    """Return every indexed job as JSON."""

    services = _services()
    return jsonify(
        {
            "jobs": [entry.to_dict() for entry in services.store],
            "poll_interval": services.config["poll_interval"],
        }
    )


@app.route("/jobs/<key>", methods=["GET"])
def job_detail(key: str):
    """Return the status of one job as JSON."""

    report = query_status(_services().store, validate_content_key(key))
    if report.state == STATE_UNKNOWN:
        return _json_error("Job not found.", 404)
    return jsonify({"job": report.to_dict()})


def _log_thread_exception(args: threading.ExceptHookArgs) -> None:
    logger.error(
        "Uncaught exception in thread %s",
        args.thread.name if args.thread else "?",
        exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
    )


def main() -> None:
    """Run the development server."""

    config = load_config()
    logging.basicConfig(
        level=logging.DEBUG if config["debug_mode"] else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    threading.excepthook = _log_thread_exception
    for tool in (config["ytdlp_path"], config["ffmpeg_path"]):
        if shutil.which(tool) is None:
            logger.warning("%s executable not found; jobs will fail until it is installed.", tool)

    init_app(config)
    logger.info("Serving on http://%s:%s", config["host"], config["port"])
    app.run(host=config["host"], port=config["port"], threaded=True)


if __name__ == "__main__":
    main()
