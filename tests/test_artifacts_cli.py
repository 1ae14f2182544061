import pytest

import db
from config import DB_FILENAME
from db import stats
from tools import artifacts

from .helpers import FakeTool, write_video


@pytest.fixture()
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("MIN_VIDEO_SIZE", "16")
    monkeypatch.delenv("VIDEO_DIRS", raising=False)
    monkeypatch.delenv("VIDEO_DIR", raising=False)
    monkeypatch.delenv("FFMPEG_TIMELIMIT", raising=False)
    cache = tmp_path / "cache"
    data = tmp_path / "data"
    yield ["--cache-dir", str(cache), "--data-dir", str(data)]
    db.close()


def test_kinds_for():
    assert artifacts.kinds_for("all") == ["thumbnail", "preview"]
    assert artifacts.kinds_for("preview") == ["preview"]


def test_missing_root_exits_2(cli_env, tmp_path, capsys):
    rc = artifacts.main(["--root", str(tmp_path / "nope"), *cli_env], tool=FakeTool())
    assert rc == 2
    assert "Root not found" in capsys.readouterr().err


def test_no_videos_exits_0(cli_env, roots, capsys):
    tool = FakeTool()
    rc = artifacts.main(["--root", str(roots[0]), *cli_env], tool=tool)
    assert rc == 0
    assert "No video files found" in capsys.readouterr().out
    assert tool.calls == []


def test_generates_both_kinds(cli_env, roots, tmp_path, capsys):
    write_video(roots[0], "a.mp4")
    write_video(roots[1], "nested/b.mp4")
    tool = FakeTool()
    rc = artifacts.main(
        ["--root", str(roots[0]), "--root", str(roots[1]), "--segments", "3", *cli_env],
        tool=tool,
    )
    assert rc == 0
    out = capsys.readouterr().out
    assert "thumbnail: done=2 failed=0 total=2" in out
    assert "preview: done=2 failed=0 total=2" in out
    assert tool.count("frame") == 2
    assert tool.count("segment") == 6
    cached = sorted(p.suffix for p in (tmp_path / "cache").iterdir())
    assert cached == [".jpg", ".jpg", ".mp4", ".mp4"]

    db.configure(tmp_path / "data" / DB_FILENAME)
    assert stats.get_cached_hash("1:nested/b.mp4", stats.KIND_PREVIEW) is not None


def test_failures_exit_1(cli_env, roots, capsys):
    write_video(roots[0], "a.mp4")
    write_video(roots[0], "bad.mp4")
    tool = FakeTool()
    tool.fail_for = {"bad.mp4"}
    rc = artifacts.main(["--root", str(roots[0]), "--what", "thumbnail", *cli_env], tool=tool)
    assert rc == 1
    assert "thumbnail: done=1 failed=1 total=2" in capsys.readouterr().out
