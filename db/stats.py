"""Per-video stats rows: engagement counters, hotness and cached artifact hashes.

Rows are keyed by video identifier and created lazily by the first view, like
or artifact generation. Every mutation runs inside ``db.write_session`` so the
counter change and the hotness recompute land in one transaction.
"""
from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import db
from logutil import log

KIND_THUMBNAIL = "thumbnail"
KIND_PREVIEW = "preview"
_HASH_COLUMNS = {
    KIND_THUMBNAIL: "thumbnail_hash",
    KIND_PREVIEW: "preview_hash",
}

# Ranking weights are fixed; existing rankings depend on them.
VIEW_WEIGHT = 1.0
LIKE_WEIGHT = 5.0
RECENCY_DAYS = 7.0
RECENCY_WEIGHT = 10.0


@dataclass
class VideoStats:
    path: str
    name: str = ""
    views: int = 0
    likes: int = 0
    liked: bool = False
    last_viewed: Optional[str] = None
    hotness: float = 0.0
    thumbnail_hash: Optional[str] = None
    preview_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        return {
            "path": d["path"],
            "name": d["name"],
            "views": d["views"],
            "likes": d["likes"],
            "liked": d["liked"],
            "lastViewed": d["last_viewed"],
            "hotness": d["hotness"],
            "thumbnailHash": d["thumbnail_hash"],
            "previewHash": d["preview_hash"],
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def compute_hotness(views: int, likes: int, last_viewed: Optional[datetime], now: Optional[datetime] = None) -> float:
    """views*1 + likes*5 + max(0, 7 - days_since_last_view)*10; a never-viewed video counts as viewed today."""
    days = 0.0
    if last_viewed is not None:
        now = now or _now()
        days = max(0.0, (now - last_viewed).total_seconds() / 86400.0)
    bonus = max(0.0, RECENCY_DAYS - days) * RECENCY_WEIGHT
    return float(views) * VIEW_WEIGHT + float(likes) * LIKE_WEIGHT + bonus


def _row_to_stats(row: sqlite3.Row) -> VideoStats:
    return VideoStats(
        path=row["path"],
        name=row["name"] or "",
        views=int(row["views"] or 0),
        likes=int(row["likes"] or 0),
        liked=bool(row["liked"]),
        last_viewed=row["last_viewed"],
        hotness=float(row["hotness"] or 0.0),
        thumbnail_hash=row["thumbnail_hash"],
        preview_hash=row["preview_hash"],
    )


def _refresh_hotness(conn: sqlite3.Connection, identifier: str, now: datetime) -> None:
    row = conn.execute(
        "SELECT views, likes, last_viewed FROM video_stats WHERE path = ?", (identifier,)
    ).fetchone()
    if row is None:
        return
    hot = compute_hotness(int(row["views"]), int(row["likes"]), _parse_ts(row["last_viewed"]), now)
    conn.execute("UPDATE video_stats SET hotness = ? WHERE path = ?", (hot, identifier))


def current_stats(identifier: str) -> VideoStats:
    """Stats for ``identifier``; an all-zero record when no row exists yet."""
    with db.session() as conn:
        row = conn.execute("SELECT * FROM video_stats WHERE path = ?", (identifier,)).fetchone()
    if row is None:
        return VideoStats(path=identifier)
    return _row_to_stats(row)


def all_stats() -> Dict[str, VideoStats]:
    with db.session() as conn:
        rows = conn.execute("SELECT * FROM video_stats").fetchall()
    return {r["path"]: _row_to_stats(r) for r in rows}


def record_view(identifier: str, name: str = "") -> VideoStats:
    now = _now()
    stamp = _iso(now)
    with db.write_session() as conn:
        conn.execute(
            """
            INSERT INTO video_stats (path, name, views, last_viewed, updated_at)
            VALUES (?, ?, 1, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
                views = views + 1,
                name = COALESCE(NULLIF(excluded.name, ''), name),
                last_viewed = excluded.last_viewed,
                updated_at = excluded.updated_at
            """,
            (identifier, name or "", stamp, stamp),
        )
        _refresh_hotness(conn, identifier, now)
        row = conn.execute("SELECT * FROM video_stats WHERE path = ?", (identifier,)).fetchone()
    stats = _row_to_stats(row)
    log("stats", f"view path={identifier} views={stats.views} hotness={stats.hotness:.2f}")
    return stats


def toggle_like(identifier: str, name: str = "") -> bool:
    """Flip the liked flag and adjust the like count; returns the new liked state."""
    now = _now()
    stamp = _iso(now)
    with db.write_session() as conn:
        row = conn.execute("SELECT liked FROM video_stats WHERE path = ?", (identifier,)).fetchone()
        liked = bool(row["liked"]) if row is not None else False
        new_liked = not liked
        if new_liked:
            conn.execute(
                """
                INSERT INTO video_stats (path, name, likes, liked, updated_at)
                VALUES (?, ?, 1, 1, ?)
                ON CONFLICT(path) DO UPDATE SET
                    likes = likes + 1,
                    liked = 1,
                    name = COALESCE(NULLIF(excluded.name, ''), name),
                    updated_at = excluded.updated_at
                """,
                (identifier, name or "", stamp),
            )
        else:
            conn.execute(
                """
                UPDATE video_stats SET
                    likes = MAX(likes - 1, 0),
                    liked = 0,
                    name = COALESCE(NULLIF(?, ''), name),
                    updated_at = ?
                WHERE path = ?
                """,
                (name or "", stamp, identifier),
            )
        _refresh_hotness(conn, identifier, now)
    log("stats", f"like path={identifier} liked={int(new_liked)}")
    return new_liked


def _hash_column(kind: str) -> str:
    try:
        return _HASH_COLUMNS[kind]
    except KeyError:
        raise ValueError(f"unknown artifact kind: {kind!r}") from None


def get_cached_hash(identifier: str, kind: str) -> Optional[str]:
    col = _hash_column(kind)
    with db.session() as conn:
        row = conn.execute(f"SELECT {col} FROM video_stats WHERE path = ?", (identifier,)).fetchone()
    if row is None:
        return None
    return row[col] or None


def set_cached_hash(identifier: str, name: str, kind: str, value: str) -> None:
    """Upsert the hash for ``kind``; the other kind's hash and all counters are left alone."""
    col = _hash_column(kind)
    stamp = _iso(_now())
    with db.write_session() as conn:
        conn.execute(
            f"""
            INSERT INTO video_stats (path, name, {col}, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
                {col} = excluded.{col},
                name = COALESCE(NULLIF(excluded.name, ''), name),
                updated_at = excluded.updated_at
            """,
            (identifier, name or "", value, stamp),
        )


__all__ = [
    "KIND_THUMBNAIL",
    "KIND_PREVIEW",
    "VideoStats",
    "compute_hotness",
    "current_stats",
    "all_stats",
    "record_view",
    "toggle_like",
    "get_cached_hash",
    "set_cached_hash",
]
