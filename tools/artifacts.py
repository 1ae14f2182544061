#!/usr/bin/env python3
"""
CLI to generate thumbnails and previews for every video without running the server.

Usage:
    python -m tools.artifacts \
        [--root /path/to/videos ...] \
        [--what all|thumbnail|preview] \
        [--workers 4] [--segments 60]

Notes:
- Roots default to VIDEO_DIRS / VIDEO_DIR_n / VIDEO_DIR, like the server.
- Uses the server's artifact cache (THUMBNAIL_DIR) and stats database (DATA_DIR),
  so artifacts produced here are cache hits for the server and vice versa.
- Requires ffmpeg/ffprobe on PATH (or FFMPEG / FFPROBE env overrides).
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

import db
from config import load_settings
from db.stats import KIND_PREVIEW, KIND_THUMBNAIL
from library import Library
from mediatool import FFmpegTool, MediaTool
from pipeline import Generator, RunResult


def kinds_for(what: str) -> list[str]:
    if what == "all":
        return [KIND_THUMBNAIL, KIND_PREVIEW]
    return [what]


def _printer(kind: str):
    def _progress(total: int, done: int, failed: int) -> None:
        finished = done + failed
        if total == 0 or finished == 0:
            return
        if finished == total or finished % 10 == 0:
            print(f"[cli] {kind}: {finished}/{total} (failed {failed})", flush=True)
    return _progress


def main(argv: Optional[list[str]] = None, *, tool: Optional[MediaTool] = None) -> int:
    settings = load_settings()
    ap = argparse.ArgumentParser(description="Generate thumbnails and previews without running the server")
    ap.add_argument("--root", action="append", default=None, help="Video root directory (repeatable)")
    ap.add_argument("--what", default="all", choices=["all", KIND_THUMBNAIL, KIND_PREVIEW], help="Which artifact(s) to generate")
    ap.add_argument("--workers", type=int, default=settings.workers, help="Max parallel workers")
    ap.add_argument("--segments", type=int, default=settings.preview_segments, help="Preview segment count")
    ap.add_argument("--cache-dir", default=str(settings.thumbnail_dir), help="Artifact cache directory")
    ap.add_argument("--data-dir", default=str(settings.data_dir), help="Directory holding the stats database")
    ap.add_argument("--ffmpeg-timelimit", type=int, default=None, help="Hard cap for each ffmpeg invocation in seconds (0 disables)")
    args = ap.parse_args(argv)

    roots = [Path(r).expanduser().resolve() for r in (args.root or settings.video_dirs)]
    for r in roots:
        if not r.is_dir():
            print(f"[cli] Root not found or not a dir: {r}", file=sys.stderr)
            return 2
    if args.ffmpeg_timelimit is not None:
        os.environ["FFMPEG_TIMELIMIT"] = str(max(0, int(args.ffmpeg_timelimit)))

    settings = replace(
        settings,
        video_dirs=roots,
        thumbnail_dir=Path(args.cache_dir).expanduser(),
        data_dir=Path(args.data_dir).expanduser(),
        workers=max(1, int(args.workers)),
        preview_segments=max(1, int(args.segments)),
    )
    db.configure(settings.db_path)
    db.ensure_schema()
    library = Library(settings.video_dirs, video_exts=settings.video_exts, min_size=settings.min_video_size)
    videos = library.list_videos()
    if not videos:
        exts = ",".join(sorted(settings.video_exts))
        print(f"[cli] No video files found (extensions: {exts}).")
        return 0

    tool = tool or FFmpegTool()
    print(f"[cli] Processing {len(videos)} video(s) with workers={settings.workers}")
    results: dict[str, RunResult] = {}
    try:
        for kind in kinds_for(args.what):
            gen = Generator(
                library,
                settings.thumbnail_dir,
                tool,
                kind=kind,
                workers=settings.workers,
                preview_segments=settings.preview_segments,
            )
            results[kind] = gen.generate_all(videos, progress_cb=_printer(kind))
    finally:
        db.close()

    failed = 0
    for kind, res in results.items():
        print(f"[cli] {kind}: done={res.done} failed={res.failed} total={res.total}")
        failed += res.failed
    return 1 if failed else 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
