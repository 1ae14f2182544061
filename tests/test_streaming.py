import asyncio
import inspect

import pytest

from streaming import MalformedRange, RangeNotSatisfiable, RangeStreamingResponse, iter_file, parse_range

from .helpers import write_video

SIZE = 1000


@pytest.mark.parametrize("header,expected", [
    (None, None),
    ("", None),
    ("bytes=0-99", (0, 99)),
    ("bytes=100-", (100, SIZE - 1)),
    ("bytes=999-999", (999, 999)),
    ("bytes=0-", (0, SIZE - 1)),
])
def test_parse_range_accepts(header, expected):
    assert parse_range(header, SIZE) == expected


@pytest.mark.parametrize("header", [
    "bytes=abc-def",
    "bytes=-100",
    "bytes=0-1,5-9",
    "items=0-10",
    "bytes=10",
    "bytes=+1-5",
])
def test_parse_range_malformed(header):
    with pytest.raises(MalformedRange):
        parse_range(header, SIZE)


@pytest.mark.parametrize("header", [
    "bytes=1000-1000",
    "bytes=1000-",
    "bytes=0-1000",
    "bytes=50-10",
])
def test_parse_range_unsatisfiable(header):
    with pytest.raises(RangeNotSatisfiable):
        parse_range(header, SIZE)


@pytest.fixture()
def video(roots):
    p = write_video(roots[0], "clips/a.mp4", bytes(range(256)) * 4)
    return p


def test_full_file_without_range(client, video):
    r = client.get("/api/stream", params={"video": "0:clips/a.mp4"})
    assert r.status_code == 200
    assert r.headers["accept-ranges"] == "bytes"
    assert r.headers["content-length"] == "1024"
    assert r.headers["content-type"].startswith("video/mp4")
    assert r.content == video.read_bytes()


def test_partial_content(client, video):
    r = client.get("/api/stream", params={"video": "0:clips/a.mp4"}, headers={"Range": "bytes=0-99"})
    assert r.status_code == 206
    assert r.headers["content-range"] == "bytes 0-99/1024"
    assert r.headers["content-length"] == "100"
    assert r.content == video.read_bytes()[:100]


def test_open_ended_range(client, video):
    r = client.get("/api/video/0:clips/a.mp4", headers={"Range": "bytes=1000-"})
    assert r.status_code == 206
    assert r.headers["content-range"] == "bytes 1000-1023/1024"
    assert r.content == video.read_bytes()[1000:]


def test_range_past_end_is_416(client, video):
    r = client.get("/api/stream", params={"video": "0:clips/a.mp4"}, headers={"Range": "bytes=1024-1024"})
    assert r.status_code == 416
    assert r.headers["content-range"] == "bytes */1024"
    assert r.content == b""


def test_malformed_range_is_400(client, video):
    r = client.get("/api/stream", params={"video": "0:clips/a.mp4"}, headers={"Range": "bytes=abc"})
    assert r.status_code == 400
    assert r.json()["status"] == "error"


@pytest.mark.parametrize("ident,status", [
    ("0:../../etc/passwd", 403),
    ("1:../videos/clips/a.mp4", 403),
    ("0:missing.mp4", 404),
    ("9:clips/a.mp4", 400),
    ("", 400),
])
def test_stream_rejects_bad_identifiers(client, video, ident, status):
    r = client.get("/api/stream", params={"video": ident})
    assert r.status_code == status
    body = r.json()
    assert body["status"] == "error"
    assert body["message"]


def test_legacy_bare_path_streams_from_first_root(client, video):
    r = client.get("/api/stream", params={"video": "clips/a.mp4"}, headers={"Range": "bytes=10-19"})
    assert r.status_code == 206
    assert r.content == video.read_bytes()[10:20]


def _drive(response, spec_version, fail_on):
    messages = []

    async def receive():
        await asyncio.Event().wait()

    async def send(message):
        if message["type"] == fail_on[0]:
            raise fail_on[1]()
        messages.append(message)

    scope = {"type": "http"}
    if spec_version is not None:
        scope["asgi"] = {"version": "3.0", "spec_version": spec_version}
    asyncio.run(response(scope, receive, send))
    return messages


@pytest.mark.parametrize("spec_version", [None, "2.4"])
@pytest.mark.parametrize("fail_on", [
    ("http.response.body", BrokenPipeError),
    ("http.response.body", ConnectionResetError),
    ("http.response.start", BrokenPipeError),
])
def test_client_disconnect_is_not_an_error(tmp_path, spec_version, fail_on):
    p = write_video(tmp_path, "a.mp4", b"x" * 4096)
    source = iter_file(p, 0, 4096, chunk_size=1024)
    response = RangeStreamingResponse(source, status_code=200, media_type="video/mp4")
    _drive(response, spec_version, fail_on)
    # the file handle is released without waiting for garbage collection
    assert inspect.getgeneratorstate(source) == inspect.GEN_CLOSED


def test_completed_stream_sends_every_byte(tmp_path):
    p = write_video(tmp_path, "a.mp4", bytes(range(256)) * 8)
    source = iter_file(p, 100, 1000, chunk_size=300)
    response = RangeStreamingResponse(source, status_code=206, media_type="video/mp4")
    messages = _drive(response, "2.4", ("never", None))
    body = b"".join(m.get("body", b"") for m in messages if m["type"] == "http.response.body")
    assert body == p.read_bytes()[100:1100]
    assert inspect.getgeneratorstate(source) == inspect.GEN_CLOSED
