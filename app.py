from __future__ import annotations
import os
import sys
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from fastapi import FastAPI, APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse, FileResponse
from starlette.responses import Response

import db
from db import stats as stats_db
from db.stats import KIND_PREVIEW, KIND_THUMBNAIL
from config import Settings, load_settings, _env_int
from errors import Conflict, StreamletError
from library import Library, VideoEntry
from logutil import log
from mediatool import FFmpegTool, MediaTool
from pipeline import Generator, RunRegistry
from streaming import MalformedRange, serve_range

logger = logging.getLogger(__name__)

# Global server state: settings, library, media tool and run registry.
STATE: Dict[str, Any] = {}


def configure(settings: Optional[Settings] = None, *, tool: Optional[MediaTool] = None) -> Dict[str, Any]:
    """(Re)build STATE from ``settings`` (environment when omitted)."""
    settings = settings or load_settings()
    db.configure(settings.db_path)
    db.ensure_schema()
    settings.thumbnail_dir.mkdir(parents=True, exist_ok=True)
    STATE["settings"] = settings
    STATE["library"] = Library(
        settings.video_dirs,
        video_exts=settings.video_exts,
        min_size=settings.min_video_size,
    )
    STATE["tool"] = tool or STATE.get("tool") or FFmpegTool()
    STATE["runs"] = RunRegistry()
    return STATE


def _state(key: str) -> Any:
    if "settings" not in STATE:
        configure()
    return STATE[key]


def _generator(kind: str, *, workers: Optional[int] = None) -> Generator:
    settings: Settings = _state("settings")
    return Generator(
        _state("library"),
        settings.thumbnail_dir,
        _state("tool"),
        kind=kind,
        workers=workers if workers is not None else settings.workers,
        preview_segments=settings.preview_segments,
    )


def start_run(kind: str) -> dict:
    """Start a batch run of ``kind``; raises Conflict if one is already active."""
    gen = _generator(kind)
    runs: RunRegistry = _state("runs")
    return runs.start(kind, lambda cb: gen.generate_all(progress_cb=cb))


def api_success(data=None, message: str = "OK", status_code: int = 200):
    return JSONResponse({"status": "success", "message": message, "data": data}, status_code=status_code)


def api_error(message: str, status_code: int = 400, data=None):
    return JSONResponse({"status": "error", "message": message, "data": data}, status_code=status_code)


def raise_api_error(message: str, status_code: int = 400, data=None):
    raise HTTPException(status_code=status_code, detail={"status": "error", "message": message, "data": data})


def _locate_or_error(identifier: Optional[str]) -> Path:
    if not identifier:
        raise_api_error("No video specified", status_code=400)
    library: Library = _state("library")
    try:
        return library.locate(identifier)
    except StreamletError as e:
        raise_api_error(str(e), status_code=e.status_code)


def _validate_or_error(identifier: Optional[str]) -> str:
    if not identifier:
        raise_api_error("No video specified", status_code=400)
    library: Library = _state("library")
    try:
        library.resolve(identifier)
    except StreamletError as e:
        raise_api_error(str(e), status_code=e.status_code)
    return identifier


@asynccontextmanager
async def lifespan(app_obj: FastAPI):  # type: ignore[override]
    # Startup
    settings: Settings = _state("settings")
    log("runs", f"startup roots={','.join(str(r) for r in settings.video_dirs)} cache={settings.thumbnail_dir} db={db.path()}")
    if settings.auto_generate:
        for kind in (KIND_THUMBNAIL, KIND_PREVIEW):
            try:
                start_run(kind)
            except Conflict:
                pass
    try:
        yield
    finally:
        # Shutdown: runs are not cancellable; give them a bounded chance to finish.
        runs: RunRegistry = _state("runs")
        if not runs.join_all(timeout=float(_env_int("SHUTDOWN_JOIN_SECONDS", 5))):
            logger.warning("generation runs still active at shutdown")
        db.close()


app = FastAPI(title="Streamlet", version="1.0", lifespan=lifespan)
api = APIRouter(prefix="/api")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict) and exc.detail.get("status") == "error":
        payload = exc.detail
        return JSONResponse(payload, status_code=exc.status_code)
    return api_error(str(exc.detail), status_code=exc.status_code)


@api.get("/health")
def health():
    tool = _state("tool")
    probe = getattr(tool, "available", None)
    caps = probe() if callable(probe) else {}
    settings: Settings = _state("settings")
    return api_success({
        "ok": True,
        **caps,
        "roots": [str(r) for r in settings.video_dirs],
    })


# --- Library listing ---
_SORT_KEYS = {
    "views": lambda v: v["views"],
    "likes": lambda v: v["likes"],
    "hotness": lambda v: v["hotness"],
    "name": lambda v: v["name"],
    "size": lambda v: v["size"],
    "modified": lambda v: v["modified"],
}


def _video_row(entry: VideoEntry, stats: Optional[stats_db.VideoStats], roots: List[Path]) -> dict:
    return {
        "name": entry.name,
        "size": entry.size,
        "path": entry.identifier,
        "dir": roots[entry.root_index].name,
        "modified": datetime.fromtimestamp(entry.mtime).strftime("%Y-%m-%d %H:%M"),
        "views": stats.views if stats else 0,
        "likes": stats.likes if stats else 0,
        "liked": stats.liked if stats else False,
        "hotness": stats.hotness if stats else 0.0,
    }


@api.get("/videos")
def videos_list(
    page: int = Query(1),
    pageSize: int = Query(50),
    search: str = Query(""),
    sort: str = Query("modified"),
    order: str = Query("desc"),
):
    library: Library = _state("library")
    if page < 1:
        page = 1
    if pageSize < 1 or pageSize > 100:
        pageSize = 50
    sort = sort if sort in _SORT_KEYS else "modified"
    asc = order == "asc"
    needle = (search or "").lower()
    all_stats = stats_db.all_stats()
    rows = [
        _video_row(e, all_stats.get(e.identifier), library.roots)
        for e in library.walk()
        if not needle or needle in e.name.lower()
    ]
    # "name" reads A->Z by default, so its direction is inverted.
    reverse = (not asc) if sort != "name" else asc
    rows.sort(key=_SORT_KEYS[sort], reverse=reverse)
    total = len(rows)
    start = min((page - 1) * pageSize, total)
    end = min(start + pageSize, total)
    return api_success({
        "total": total,
        "page": page,
        "pageSize": pageSize,
        "totalPages": (total + pageSize - 1) // pageSize,
        "sort": sort,
        "order": order,
        "videos": rows[start:end],
        "videoDirs": [str(r) for r in library.roots],
    })


# --- Streaming ---
def _stream(request: Request, identifier: str) -> Response:
    file_path = _locate_or_error(identifier)
    range_header = request.headers.get("range")
    try:
        return serve_range(file_path, range_header)
    except MalformedRange as e:
        raise_api_error(str(e), status_code=400)
    except StreamletError as e:
        raise_api_error(str(e), status_code=e.status_code)


@api.get("/video/{identifier:path}")
def stream_video(identifier: str, request: Request):
    return _stream(request, identifier)


@api.get("/stream")
def stream_query(request: Request, video: str = Query(...)):
    return _stream(request, video)


# --- Artifacts ---
def _artifact_on_demand(kind: str, identifier: str) -> Path:
    src = _locate_or_error(identifier)
    gen = _generator(kind, workers=1)
    try:
        out, outcome = gen.ensure(identifier, src)
    except StreamletError as e:
        logger.warning("on-demand %s failed for %s: %s", kind, identifier, e)
        raise_api_error(f"Failed to generate {kind}", status_code=500, data={"error": str(e)})
    except OSError as e:
        logger.warning("on-demand %s failed for %s: %s", kind, identifier, e)
        raise_api_error(f"Failed to generate {kind}", status_code=500, data={"error": str(e)})
    log(kind, f"{kind} serve path={identifier} outcome={outcome}")
    return out


@api.get("/thumbnail")
def thumbnail_get(video: str = Query(...)):
    out = _artifact_on_demand(KIND_THUMBNAIL, video)
    return FileResponse(str(out), media_type="image/jpeg")


@api.get("/preview")
def preview_get(request: Request, video: str = Query(...)):
    out = _artifact_on_demand(KIND_PREVIEW, video)
    try:
        return serve_range(out, request.headers.get("range"), media_type="video/mp4")
    except MalformedRange as e:
        raise_api_error(str(e), status_code=400)


# --- Engagement ---
class EngagementEvent(BaseModel):  # type: ignore
    path: str
    name: Optional[str] = ""


@api.post("/view")
def view_post(ev: EngagementEvent):
    identifier = _validate_or_error(ev.path)
    stats = stats_db.record_view(identifier, ev.name or "")
    return api_success({"views": stats.views, "hotness": stats.hotness})


@api.post("/like")
def like_post(ev: EngagementEvent):
    identifier = _validate_or_error(ev.path)
    liked = stats_db.toggle_like(identifier, ev.name or "")
    stats = stats_db.current_stats(identifier)
    return api_success({"liked": liked, "likes": stats.likes, "hotness": stats.hotness})


@api.get("/stats")
def stats_get(video: str = Query(...)):
    identifier = _validate_or_error(video)
    return api_success(stats_db.current_stats(identifier).to_dict())


# --- Batch generation ---
def _generate_post(kind: str, label: str):
    try:
        progress = start_run(kind)
    except Conflict as e:
        raise_api_error(str(e), status_code=409, data={"progress": e.data})
    return api_success({"progress": progress}, message=f"{label} generation started")


def _generate_status(kind: str):
    runs: RunRegistry = _state("runs")
    return api_success(runs.status(kind))


@api.post("/thumbnails/generate")
def thumbnails_generate():
    return _generate_post(KIND_THUMBNAIL, "Thumbnail")


@api.get("/thumbnails/status")
def thumbnails_status():
    return _generate_status(KIND_THUMBNAIL)


@api.post("/previews/generate")
def previews_generate():
    return _generate_post(KIND_PREVIEW, "Preview")


@api.get("/previews/status")
def previews_status():
    return _generate_status(KIND_PREVIEW)


app.include_router(api)


if __name__ == "__main__":  # pragma: no cover
    try:
        import uvicorn  # type: ignore
    except Exception:  # pragma: no cover
        sys.stderr.write("[app] Missing dependency: uvicorn. Install with: pip install uvicorn\n")
        sys.exit(1)
    # Require an explicit opt-in to start the server when running this file directly
    run_flag = os.environ.get("RUN_SERVER") or os.environ.get("RUN_STANDALONE")
    if str(run_flag).strip().lower() not in {"1", "true", "yes", "y"}:
        sys.stderr.write(
            "[app] Not starting server. To run directly, set RUN_SERVER=1 (or RUN_STANDALONE=1).\n"
        )
        sys.exit(0)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    host = os.environ.get("HOST", "127.0.0.1")
    port = _env_int("PORT", 8080)
    uvicorn.run(app, host=host, port=port)
