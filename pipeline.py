"""Thumbnail and preview generation.

Artifacts live flat in the cache directory as ``<fingerprint>.jpg`` (thumbnail)
and ``<fingerprint>.mp4`` (preview). Before any work, ``Generator.ensure`` runs
the three-tier check:

1. recorded hash for the identifier whose artifact file still exists -> done
2. fresh content fingerprint whose artifact already exists -> record mapping
3. otherwise produce the artifact with the media tool

so a rerun over an unchanged library invokes no external tool at all.
"""
from __future__ import annotations

import concurrent.futures
import logging
import os
import shutil
import threading
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from db import stats as stats_db
from db.stats import KIND_PREVIEW, KIND_THUMBNAIL
from errors import Conflict, ExternalToolFailure, StreamletError
from fingerprint import content_fingerprint
from library import Library, VideoEntry
from logutil import log
from mediatool import MediaTool

logger = logging.getLogger(__name__)

ARTIFACT_EXTS = {
    KIND_THUMBNAIL: ".jpg",
    KIND_PREVIEW: ".mp4",
}
KINDS = (KIND_THUMBNAIL, KIND_PREVIEW)

DEFAULT_DURATION = 600.0
DEFAULT_WORKERS = 4
DEFAULT_PREVIEW_SEGMENTS = 60
SEGMENT_SECONDS = 0.5
SEGMENT_SPAN = (0.02, 0.98)
FALLBACK_CLIP_SECONDS = 30.0
FALLBACK_MIN_MIDPOINT = 15.0

OUTCOME_HIT = "hit"
OUTCOME_DEDUP = "dedup"
OUTCOME_GENERATED = "generated"

ProgressCallback = Callable[[int, int, int], None]


def artifact_path(cache_dir: Path, fingerprint: str, kind: str) -> Path:
    try:
        ext = ARTIFACT_EXTS[kind]
    except KeyError:
        raise ValueError(f"unknown artifact kind: {kind!r}") from None
    return Path(cache_dir) / f"{fingerprint}{ext}"


def _file_nonempty(p: Path) -> bool:
    try:
        return p.is_file() and p.stat().st_size > 0
    except OSError:
        return False


def segment_timestamps(duration: float, count: int) -> List[float]:
    """``count`` start times spread evenly over the 2%..98% span of ``duration``."""
    lo, hi = SEGMENT_SPAN
    count = max(1, int(count))
    return [duration * (lo + (hi - lo) * i / count) for i in range(count)]


def fallback_clip_start(duration: float) -> float:
    mid = duration / 2.0
    return 0.0 if mid < FALLBACK_MIN_MIDPOINT else mid


# Serializes production per fingerprint so identical content is generated once
# even when two identifiers reach tier 3 at the same time. Entries hold
# [lock, holders] and are dropped when the last holder leaves.
_FP_LOCKS: Dict[str, list] = {}
_FP_LOCKS_MTX = threading.Lock()


@contextmanager
def _fingerprint_lock(kind: str, fingerprint: str) -> Iterator[None]:
    key = f"{kind}::{fingerprint}"
    with _FP_LOCKS_MTX:
        entry = _FP_LOCKS.get(key)
        if entry is None:
            entry = _FP_LOCKS[key] = [threading.Lock(), 0]
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _FP_LOCKS_MTX:
            entry[1] -= 1
            if entry[1] == 0:
                _FP_LOCKS.pop(key, None)


@dataclass
class RunResult:
    total: int = 0
    done: int = 0
    failed: int = 0


class Generator:
    def __init__(
        self,
        library: Library,
        cache_dir: Path,
        tool: MediaTool,
        *,
        kind: str,
        workers: int = DEFAULT_WORKERS,
        preview_segments: int = DEFAULT_PREVIEW_SEGMENTS,
    ) -> None:
        if kind not in ARTIFACT_EXTS:
            raise ValueError(f"unknown artifact kind: {kind!r}")
        self.library = library
        self.cache_dir = Path(cache_dir)
        self.tool = tool
        self.kind = kind
        self.workers = max(1, int(workers or DEFAULT_WORKERS))
        self.preview_segments = max(1, int(preview_segments))
        self._progress_lock = threading.Lock()

    # -----------------------------
    # Single video
    # -----------------------------
    def ensure(self, identifier: str, src: Path, name: str = "") -> Tuple[Path, str]:
        """Return ``(artifact_path, outcome)`` after the three-tier cache check."""
        name = name or src.name
        recorded = stats_db.get_cached_hash(identifier, self.kind)
        if recorded:
            out = artifact_path(self.cache_dir, recorded, self.kind)
            if _file_nonempty(out):
                return out, OUTCOME_HIT

        fp = content_fingerprint(src)
        out = artifact_path(self.cache_dir, fp, self.kind)
        if _file_nonempty(out):
            stats_db.set_cached_hash(identifier, name, self.kind, fp)
            log(self.kind, f"{self.kind} dedup path={identifier} hash={fp}")
            return out, OUTCOME_DEDUP

        with _fingerprint_lock(self.kind, fp):
            if _file_nonempty(out):
                outcome = OUTCOME_DEDUP
            else:
                self._produce(src, fp, out)
                outcome = OUTCOME_GENERATED
        stats_db.set_cached_hash(identifier, name, self.kind, fp)
        return out, outcome

    def generate_one(self, identifier: str) -> Path:
        """
        On-demand generation for a playback request. Runs the same cache check and
        production as a batch worker, in the calling thread, and raises on failure.
        """
        src = self.library.locate(identifier)
        out, _ = self.ensure(identifier, src)
        return out

    def _duration(self, src: Path) -> float:
        try:
            d = float(self.tool.probe_duration(src))
        except ExternalToolFailure as e:
            log(self.kind, f"{self.kind} probe failed path={src} err={e}; assuming {DEFAULT_DURATION:.0f}s")
            return DEFAULT_DURATION
        if not d or d <= 0 or d != d:
            return DEFAULT_DURATION
        return d

    def _tmp_path(self, fp: str) -> Path:
        ext = ARTIFACT_EXTS[self.kind]
        return self.cache_dir / f".{fp}.{uuid.uuid4().hex[:8]}.tmp{ext}"

    def _produce(self, src: Path, fp: str, out: Path) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        tmp = self._tmp_path(fp)
        log(self.kind, f"{self.kind} start src={src} out={out}")
        try:
            duration = self._duration(src)
            if self.kind == KIND_THUMBNAIL:
                self.tool.extract_frame(src, duration / 2.0, tmp)
            else:
                self._produce_preview(src, fp, duration, tmp)
            if not _file_nonempty(tmp):
                raise ExternalToolFailure(f"{self.kind} produced no output for {src}")
            os.replace(tmp, out)
        finally:
            if tmp.exists():
                try:
                    tmp.unlink()
                except OSError:
                    logger.warning("could not remove temp artifact %s", tmp)
        log(self.kind, f"{self.kind} end src={src} out={out} size={out.stat().st_size}")

    def _produce_preview(self, src: Path, fp: str, duration: float, tmp: Path) -> None:
        work = self.cache_dir / f".segments-{fp[:8]}-{uuid.uuid4().hex[:8]}"
        work.mkdir(parents=True, exist_ok=True)
        try:
            try:
                segments: List[Path] = []
                for i, ts in enumerate(segment_timestamps(duration, self.preview_segments)):
                    seg = work / f"seg{i}.ts"
                    self.tool.extract_segment(src, ts, SEGMENT_SECONDS, seg)
                    segments.append(seg)
                self.tool.concat_segments(segments, tmp)
                return
            except (ExternalToolFailure, OSError) as e:
                log("preview", f"preview segmented failed src={src} err={e}; falling back to single clip")
            start = fallback_clip_start(duration)
            self.tool.extract_clip(src, start, FALLBACK_CLIP_SECONDS, tmp)
        finally:
            shutil.rmtree(work, ignore_errors=True)

    # -----------------------------
    # Batch
    # -----------------------------
    def generate_all(
        self,
        videos: Optional[Iterable[VideoEntry]] = None,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> RunResult:
        """
        Run ``ensure`` for every eligible video on a pool of ``workers`` threads.

        A failing video is logged and counted; it never stops the run. ``done``
        counts successful videos, ``failed`` the others.
        """
        items = list(videos) if videos is not None else self.library.list_videos()
        result = RunResult(total=len(items))
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        log(self.kind, f"{self.kind} run start total={result.total} workers={self.workers}")
        if progress_cb is not None:
            progress_cb(result.total, 0, 0)

        def _job(entry: VideoEntry) -> None:
            ok = False
            try:
                self.ensure(entry.identifier, entry.path, entry.name)
                ok = True
            except (StreamletError, OSError) as e:
                logger.warning("%s failed for %s: %s", self.kind, entry.identifier, e)
            except Exception:
                logger.exception("%s crashed for %s", self.kind, entry.identifier)
            with self._progress_lock:
                if ok:
                    result.done += 1
                else:
                    result.failed += 1
                if progress_cb is not None:
                    progress_cb(result.total, result.done, result.failed)

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.workers,
            thread_name_prefix=f"gen-{self.kind}",
        ) as ex:
            for fu in [ex.submit(_job, it) for it in items]:
                fu.result()
        log(self.kind, f"{self.kind} run complete done={result.done} failed={result.failed} total={result.total}")
        return result


# -----------------------------
# Run bookkeeping
# -----------------------------
@dataclass
class RunProgress:
    total: int = 0
    done: int = 0
    failed: int = 0
    running: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class RunRegistry:
    """
    Owns the batch runs of each kind.

    One lock guards every state transition. A kind can have at most one active
    run; starting it again raises Conflict carrying the live progress. Runs of
    different kinds proceed independently.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._progress: Dict[str, RunProgress] = {k: RunProgress() for k in KINDS}
        self._threads: Dict[str, threading.Thread] = {}

    def status(self, kind: str) -> dict:
        with self._lock:
            return self._get(kind).to_dict()

    def _get(self, kind: str) -> RunProgress:
        try:
            return self._progress[kind]
        except KeyError:
            raise ValueError(f"unknown artifact kind: {kind!r}") from None

    def start(self, kind: str, job: Callable[[ProgressCallback], object]) -> dict:
        """Launch ``job(progress_cb)`` on an owned thread; returns the initial snapshot."""
        with self._lock:
            prog = self._get(kind)
            if prog.running:
                raise Conflict(f"{kind.capitalize()} generation already running", data=prog.to_dict())
            self._progress[kind] = prog = RunProgress(running=True)

            def _update(total: int, done: int, failed: int) -> None:
                with self._lock:
                    prog.total = total
                    prog.done = done
                    prog.failed = failed

            def _target() -> None:
                try:
                    job(_update)
                except Exception:
                    logger.exception("%s run aborted", kind)
                finally:
                    with self._lock:
                        prog.running = False
                    log("runs", f"{kind} run finished total={prog.total} done={prog.done} failed={prog.failed}")

            th = threading.Thread(target=_target, name=f"run-{kind}", daemon=True)
            self._threads[kind] = th
            snapshot = prog.to_dict()
            th.start()
        log("runs", f"{kind} run started")
        return snapshot

    def wait(self, kind: str, timeout: Optional[float] = None) -> bool:
        """Block until the current run of ``kind`` finishes; False on timeout."""
        with self._lock:
            th = self._threads.get(kind)
        if th is None:
            return True
        th.join(timeout)
        return not th.is_alive()

    def join_all(self, timeout: Optional[float] = None) -> bool:
        ok = True
        for kind in KINDS:
            ok = self.wait(kind, timeout) and ok
        return ok


__all__ = [
    "ARTIFACT_EXTS",
    "KINDS",
    "Generator",
    "RunProgress",
    "RunRegistry",
    "RunResult",
    "artifact_path",
    "segment_timestamps",
    "fallback_clip_start",
]
