"""Video roots: identifiers, safe resolution and the shared eligibility walk.

A video identifier is ``"<rootIndex>:<relativePath>"`` where ``relativePath``
uses forward slashes. Identifiers without an index prefix are legacy
references and resolve against root 0.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, List, Optional, Sequence

from config import DEFAULT_MIN_VIDEO_SIZE
from errors import AccessDenied, InvalidIdentifier, NotFound, RootIndexOutOfRange

DELIMITER = ":"
# Platform companion files (macOS AppleDouble "._name.mp4")
HIDDEN_PREFIX = "._"

_INDEXED = re.compile(r"^(-?\d+):(.*)$", re.DOTALL)


@dataclass(frozen=True)
class VideoEntry:
    identifier: str
    root_index: int
    rel_path: str
    path: Path
    name: str
    size: int
    mtime: float


def _canonical(p: Path | str) -> str:
    return os.path.realpath(os.path.abspath(str(p)))


def _is_within(candidate: str, root: str) -> bool:
    if candidate == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return candidate.startswith(prefix)


class Library:
    def __init__(
        self,
        roots: Sequence[Path | str],
        *,
        video_exts: Iterable[str] = (".mp4",),
        min_size: int = DEFAULT_MIN_VIDEO_SIZE,
    ) -> None:
        if not roots:
            raise ValueError("at least one video root is required")
        self.roots: List[Path] = [Path(r) for r in roots]
        self.video_exts = {e.lower() if e.startswith(".") else "." + e.lower() for e in video_exts}
        self.min_size = int(min_size)

    # -----------------------------
    # Addressing
    # -----------------------------
    def address(self, root_index: int, rel_path: str | Path) -> str:
        if root_index < 0 or root_index >= len(self.roots):
            raise RootIndexOutOfRange(f"root index {root_index} out of range")
        rel = PurePosixPath(Path(rel_path).as_posix()).as_posix()
        if not rel or rel == ".":
            raise InvalidIdentifier("empty relative path")
        return f"{root_index}{DELIMITER}{rel}"

    def parse(self, identifier: str) -> tuple[int, str]:
        """Split an identifier into ``(root_index, relative_path)`` without touching disk."""
        if not isinstance(identifier, str) or not identifier.strip():
            raise InvalidIdentifier("empty identifier")
        if "\x00" in identifier:
            raise InvalidIdentifier("identifier contains NUL")
        m = _INDEXED.match(identifier)
        if m is None:
            return 0, identifier
        idx = int(m.group(1))
        rel = m.group(2)
        if idx < 0 or idx >= len(self.roots):
            raise RootIndexOutOfRange(f"root index {idx} out of range")
        if not rel:
            raise InvalidIdentifier("empty relative path")
        return idx, rel

    def resolve(self, identifier: str) -> Path:
        """
        Map an identifier to an absolute path inside its root.

        The joined path is canonicalized (symlinks and ``..`` collapsed) and must
        stay inside the canonical root, otherwise AccessDenied is raised.
        """
        idx, rel = self.parse(identifier)
        root = _canonical(self.roots[idx])
        candidate = _canonical(os.path.join(root, rel))
        if not _is_within(candidate, root) or candidate == root:
            raise AccessDenied("Access denied")
        return Path(candidate)

    def locate(self, identifier: str) -> Path:
        """resolve() plus an existence check; raises NotFound for missing files."""
        p = self.resolve(identifier)
        if not p.is_file():
            raise NotFound("Video not found")
        return p

    def identify(self, path: Path | str) -> Optional[str]:
        """Reverse mapping: identifier for an absolute path, or None if outside every root."""
        candidate = _canonical(path)
        for idx, root in enumerate(self.roots):
            croot = _canonical(root)
            if _is_within(candidate, croot) and candidate != croot:
                return self.address(idx, os.path.relpath(candidate, croot))
        return None

    # -----------------------------
    # Enumeration
    # -----------------------------
    def is_eligible(self, name: str, size: int) -> bool:
        if name.startswith(HIDDEN_PREFIX):
            return False
        if os.path.splitext(name)[1].lower() not in self.video_exts:
            return False
        return size >= self.min_size

    def walk(self) -> Iterator[VideoEntry]:
        """Yield every eligible video under every root, root order then path order."""
        for idx, root in enumerate(self.roots):
            if not root.is_dir():
                continue
            croot = _canonical(root)
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames.sort()
                for fn in sorted(filenames):
                    full = os.path.join(dirpath, fn)
                    try:
                        st = os.stat(full)
                    except OSError:
                        continue
                    if not os.path.isfile(full) or not self.is_eligible(fn, st.st_size):
                        continue
                    # same containment rule as resolve(): links out of the root are not videos
                    if not _is_within(_canonical(full), croot):
                        continue
                    rel = os.path.relpath(full, root)
                    yield VideoEntry(
                        identifier=self.address(idx, rel),
                        root_index=idx,
                        rel_path=Path(rel).as_posix(),
                        path=Path(full),
                        name=fn,
                        size=int(st.st_size),
                        mtime=float(st.st_mtime),
                    )

    def list_videos(self) -> List[VideoEntry]:
        return list(self.walk())


__all__ = ["Library", "VideoEntry", "DELIMITER", "HIDDEN_PREFIX"]
