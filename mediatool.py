"""External media tool boundary.

The pipeline never decodes video itself. It talks to a ``MediaTool``:
``probe_duration`` plus a handful of extraction primitives. ``FFmpegTool``
implements them with ffprobe/ffmpeg subprocesses; tests substitute a fake.
"""
from __future__ import annotations

import os
import shutil
import subprocess
import threading
import time
from pathlib import Path
from typing import Sequence

from errors import ExternalToolFailure
from logutil import log

try:
    _FFMPEG_CONCURRENCY = max(1, min(16, int(os.environ.get("FFMPEG_CONCURRENCY", "4"))))
except Exception:
    _FFMPEG_CONCURRENCY = 4
_FFMPEG_SEM = threading.BoundedSemaphore(_FFMPEG_CONCURRENCY)


def _timelimit() -> int:
    try:
        return int(os.environ.get("FFMPEG_TIMELIMIT", "600") or 600)
    except Exception:
        return 600


def _trim(text: str, limit: int = 1200) -> str:
    text = (text or "").strip()
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def _run(cmd: list[str]) -> subprocess.CompletedProcess:
    """
    Run one ffmpeg/ffprobe command with the FFMPEG_TIMELIMIT cap.

    ffmpeg invocations also hold a slot of the global ffmpeg semaphore so batch
    workers and on-demand requests together never exceed FFMPEG_CONCURRENCY
    encoders. Any failure to run is reported as ExternalToolFailure.
    """
    tl = _timelimit()
    is_ffmpeg = os.path.basename(cmd[0]).startswith("ffmpeg")
    sem = _FFMPEG_SEM if is_ffmpeg else None
    if sem is not None:
        sem.acquire()
    t0 = time.time()
    try:
        if tl and tl > 0:
            proc = subprocess.run(cmd, capture_output=True, text=True, encoding="utf-8", errors="replace", timeout=tl)
        else:
            proc = subprocess.run(cmd, capture_output=True, text=True, encoding="utf-8", errors="replace")
    except subprocess.TimeoutExpired as te:
        raise ExternalToolFailure(f"subprocess timed out after {tl}s: {' '.join(cmd[:4])}...") from te
    except OSError as e:
        raise ExternalToolFailure(f"failed to launch {cmd[0]}: {e}") from e
    finally:
        if sem is not None:
            sem.release()
    elapsed = time.time() - t0
    if proc.returncode != 0:
        err = _trim(proc.stderr)
        log("ffmpeg", f"fail cmd={os.path.basename(cmd[0])} code={proc.returncode} elapsed={elapsed:.3f}s stderr={err!r}")
        raise ExternalToolFailure(err or f"{os.path.basename(cmd[0])} exited with code {proc.returncode}")
    log("ffmpeg", f"ok cmd={os.path.basename(cmd[0])} elapsed={elapsed:.3f}s")
    return proc


class MediaTool:
    """Operations the generation pipeline needs from a media toolkit."""

    def probe_duration(self, src: Path) -> float:
        raise NotImplementedError

    def extract_frame(self, src: Path, at: float, out: Path) -> None:
        raise NotImplementedError

    def extract_segment(self, src: Path, start: float, length: float, out: Path) -> None:
        """Write a short silent segment in a concat-friendly container (MPEG-TS)."""
        raise NotImplementedError

    def concat_segments(self, segments: Sequence[Path], out: Path) -> None:
        raise NotImplementedError

    def extract_clip(self, src: Path, start: float, length: float, out: Path) -> None:
        """Write one contiguous silent MP4 clip."""
        raise NotImplementedError


class FFmpegTool(MediaTool):
    def __init__(self, ffmpeg: str | None = None, ffprobe: str | None = None) -> None:
        self.ffmpeg = ffmpeg or os.environ.get("FFMPEG") or "ffmpeg"
        self.ffprobe = ffprobe or os.environ.get("FFPROBE") or "ffprobe"

    def available(self) -> dict[str, bool]:
        return {
            "ffmpeg": bool(shutil.which(self.ffmpeg)),
            "ffprobe": bool(shutil.which(self.ffprobe)),
        }

    def probe_duration(self, src: Path) -> float:
        proc = _run([
            self.ffprobe,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(src),
        ])
        raw = (proc.stdout or "").strip()
        try:
            return float(raw)
        except ValueError as e:
            raise ExternalToolFailure(f"unparseable duration {raw!r} for {src}") from e

    def extract_frame(self, src: Path, at: float, out: Path) -> None:
        _run([
            self.ffmpeg, "-y",
            "-ss", f"{max(0.0, at):.2f}",
            "-i", str(src),
            "-frames:v", "1",
            "-q:v", "2",
            "-f", "image2",
            str(out),
        ])

    def extract_segment(self, src: Path, start: float, length: float, out: Path) -> None:
        _run([
            self.ffmpeg, "-y",
            "-ss", f"{max(0.0, start):.2f}",
            "-i", str(src),
            "-t", f"{length:.1f}",
            "-c:v", "libx264",
            "-crf", "28",
            "-preset", "fast",
            "-an",
            "-f", "mpegts",
            str(out),
        ])

    def concat_segments(self, segments: Sequence[Path], out: Path) -> None:
        if not segments:
            raise ExternalToolFailure("no segments to concatenate")
        _run([
            self.ffmpeg, "-y",
            "-i", "concat:" + "|".join(str(s) for s in segments),
            "-c", "copy",
            "-movflags", "+faststart",
            "-f", "mp4",
            str(out),
        ])

    def extract_clip(self, src: Path, start: float, length: float, out: Path) -> None:
        _run([
            self.ffmpeg, "-y",
            "-ss", f"{max(0.0, start):.2f}",
            "-i", str(src),
            "-t", f"{length:.0f}",
            "-c:v", "libx264",
            "-crf", "28",
            "-preset", "fast",
            "-an",
            "-movflags", "+faststart",
            "-f", "mp4",
            str(out),
        ])


__all__ = ["MediaTool", "FFmpegTool"]
