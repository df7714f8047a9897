import io

import pytest

from videos.uploads import InvalidObjectKey, RetryingUploader

from .conftest import client_error


class FlakyStorage:
    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error
        self.calls = []

    def put_object(self, bucket_ref, key, body, content_type=None):
        data = body.read() if hasattr(body, "read") else body
        self.calls.append((bucket_ref, key, data, content_type))
        if len(self.calls) <= self.failures:
            raise self.error or client_error()
        return key


def make_uploader(storage, delays):
    return RetryingUploader(storage, max_retries=3, base_delay=2, sleep=delays.append)


def test_put_that_fails_twice_then_succeeds():
    storage = FlakyStorage(failures=2)
    delays = []

    key = make_uploader(storage, delays).upload("media-test", "hls/abc/master.m3u8", b"#EXTM3U", "application/vnd.apple.mpegurl")

    assert key == "hls/abc/master.m3u8"
    assert len(storage.calls) == 3
    assert delays == [2, 4]


def test_exhausted_retries_reraise_the_original_error():
    err = client_error("ServiceUnavailable")
    storage = FlakyStorage(failures=100, error=err)
    delays = []

    with pytest.raises(type(err)) as excinfo:
        make_uploader(storage, delays).upload("media-test", "uploads/a.mp4", b"data", "video/mp4")

    assert excinfo.value is err
    assert len(storage.calls) == 4
    assert delays == [2, 4, 8]


@pytest.mark.parametrize("key", ["", "   ", "/absolute/key.ts", "hls/../escape.ts", "bad\nkey.ts", None])
def test_invalid_keys_are_rejected_without_any_attempt(key):
    storage = FlakyStorage(failures=0)
    delays = []

    with pytest.raises(InvalidObjectKey):
        make_uploader(storage, delays).upload("media-test", key, b"data", "video/MP2T")

    assert storage.calls == []
    assert delays == []


def test_non_storage_errors_are_not_retried():
    storage = FlakyStorage(failures=1, error=TypeError("body must be bytes"))
    delays = []

    with pytest.raises(TypeError):
        make_uploader(storage, delays).upload("media-test", "uploads/a.mp4", object(), "video/mp4")

    assert len(storage.calls) == 1
    assert delays == []


def test_stream_bodies_are_rewound_before_each_attempt():
    storage = FlakyStorage(failures=2)
    body = io.BytesIO(b"segment-bytes")

    make_uploader(storage, []).upload("media-test", "hls/abc/360p/segment_000.ts", body, "video/MP2T")

    assert [call[2] for call in storage.calls] == [b"segment-bytes"] * 3
