"""Environment-driven settings for the Streamlet server and CLI tools."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

DEFAULT_MIN_VIDEO_SIZE = 10 * 1024 * 1024
DB_FILENAME = "streamlet.db"


def _env_int(name: str, default: int) -> int:
    try:
        v = os.environ.get(name)
        return int(v) if v is not None and str(v).strip() != "" else int(default)
    except Exception:
        return int(default)


def _env_on(name: str, default: bool = False) -> bool:
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def _parse_video_dirs() -> List[str]:
    """
    Video roots, first match wins:
    1. VIDEO_DIRS=/a,/b,/c (comma-separated)
    2. VIDEO_DIR_1=/a, VIDEO_DIR_2=/b, ... (stops at the first gap after index 1)
    3. VIDEO_DIR=/a
    4. ./videos
    """
    dirs: List[str] = []
    env = os.environ.get("VIDEO_DIRS")
    if env:
        dirs = [part.strip() for part in env.split(",") if part.strip()]
        if dirs:
            return dirs
    for i in range(1, 101):
        d = os.environ.get(f"VIDEO_DIR_{i}")
        if d:
            dirs.append(d)
        elif i > 1:
            break
    if dirs:
        return dirs
    single = os.environ.get("VIDEO_DIR")
    if single:
        return [single]
    return ["./videos"]


def _parse_exts(raw: Optional[str]) -> set[str]:
    out: set[str] = set()
    for part in (raw or "").split(","):
        s = part.strip().lower()
        if not s:
            continue
        if not s.startswith("."):
            s = "." + s
        out.add(s)
    return out or {".mp4"}


@dataclass
class Settings:
    video_dirs: List[Path]
    thumbnail_dir: Path
    data_dir: Path
    preview_segments: int = 60
    workers: int = 4
    min_video_size: int = DEFAULT_MIN_VIDEO_SIZE
    video_exts: set[str] = field(default_factory=lambda: {".mp4"})
    auto_generate: bool = True
    env: str = "development"

    @property
    def db_path(self) -> Path:
        return self.data_dir / DB_FILENAME


def load_settings() -> Settings:
    return Settings(
        video_dirs=[Path(d).expanduser() for d in _parse_video_dirs()],
        thumbnail_dir=Path(os.environ.get("THUMBNAIL_DIR") or "./thumbnails").expanduser(),
        data_dir=Path(os.environ.get("DATA_DIR") or "./data").expanduser(),
        preview_segments=max(1, _env_int("PREVIEW_SEGMENTS", 60)),
        workers=max(1, _env_int("GEN_WORKERS", 4)),
        min_video_size=max(0, _env_int("MIN_VIDEO_SIZE", DEFAULT_MIN_VIDEO_SIZE)),
        video_exts=_parse_exts(os.environ.get("VIDEO_EXTS")),
        auto_generate=_env_on("AUTO_GENERATE", True),
        env=os.environ.get("ENV") or "development",
    )


__all__ = ["Settings", "load_settings", "DEFAULT_MIN_VIDEO_SIZE", "DB_FILENAME"]
