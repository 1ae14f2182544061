import pytest
from fastapi.testclient import TestClient

import app
import db
from config import Settings

from .helpers import FakeTool


@pytest.fixture()
def roots(tmp_path):
    a = tmp_path / "videos"
    b = tmp_path / "more"
    a.mkdir()
    b.mkdir()
    return [a, b]


@pytest.fixture()
def settings(tmp_path, roots):
    return Settings(
        video_dirs=list(roots),
        thumbnail_dir=tmp_path / "thumbnails",
        data_dir=tmp_path / "data",
        preview_segments=4,
        workers=4,
        min_video_size=16,
        video_exts={".mp4"},
        auto_generate=False,
    )


@pytest.fixture()
def stats_db(settings):
    """Fresh stats database under tmp_path."""
    db.configure(settings.db_path)
    db.ensure_schema()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def tool():
    return FakeTool()


@pytest.fixture()
def app_module(settings, tool, monkeypatch):
    monkeypatch.setenv("AUTO_GENERATE", "0")
    app.configure(settings, tool=tool)
    try:
        yield app
    finally:
        runs = app.STATE.get("runs")
        if runs is not None:
            runs.join_all(timeout=5)
        app.STATE.clear()
        db.close()


@pytest.fixture()
def client(app_module):
    with TestClient(app_module.app) as test_client:
        yield test_client
