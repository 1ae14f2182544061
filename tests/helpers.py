import threading
from pathlib import Path
from typing import Optional

from errors import ExternalToolFailure
from mediatool import MediaTool


def write_video(root: Path, rel: str, content: Optional[bytes] = None, *, size: int = 64) -> Path:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    if content is None:
        content = (rel.encode() * (size // max(1, len(rel)) + 1))[:size]
    p.write_bytes(content)
    return p


class FakeTool(MediaTool):
    """Records every call and writes tiny placeholder outputs instead of running ffmpeg."""

    def __init__(self, duration: float = 120.0):
        self.duration = duration
        self.calls: list[tuple] = []
        self.fail_probe = False
        self.fail_segments = False
        self.fail_concat = False
        self.fail_for: set[str] = set()
        self.gate: Optional[threading.Event] = None
        self._lock = threading.Lock()

    def _record(self, op: str, *args) -> None:
        with self._lock:
            self.calls.append((op, *args))

    def count(self, op: str) -> int:
        with self._lock:
            return sum(1 for c in self.calls if c[0] == op)

    def args(self, op: str) -> list[tuple]:
        with self._lock:
            return [c[1:] for c in self.calls if c[0] == op]

    def generation_calls(self) -> int:
        with self._lock:
            return sum(1 for c in self.calls if c[0] != "probe")

    def probe_duration(self, src: Path) -> float:
        self._record("probe", Path(src).name)
        if self.fail_probe:
            raise ExternalToolFailure("probe failed")
        return self.duration

    def extract_frame(self, src: Path, at: float, out: Path) -> None:
        if self.gate is not None:
            self.gate.wait(5)
        self._record("frame", Path(src).name, at)
        if Path(src).name in self.fail_for:
            raise ExternalToolFailure("frame extraction failed")
        Path(out).write_bytes(b"\xff\xd8fake-jpeg:" + Path(src).name.encode())

    def extract_segment(self, src: Path, start: float, length: float, out: Path) -> None:
        self._record("segment", Path(src).name, start, length)
        if self.fail_segments:
            raise ExternalToolFailure("segment failed")
        Path(out).write_bytes(b"ts")

    def concat_segments(self, segments, out: Path) -> None:
        self._record("concat", len(segments))
        if self.fail_concat:
            raise ExternalToolFailure("concat failed")
        Path(out).write_bytes(b"mp4:" + b"".join(Path(s).read_bytes() for s in segments))

    def extract_clip(self, src: Path, start: float, length: float, out: Path) -> None:
        self._record("clip", Path(src).name, start, length)
        if Path(src).name in self.fail_for:
            raise ExternalToolFailure("clip failed")
        Path(out).write_bytes(b"mp4-clip")
