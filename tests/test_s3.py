from unittest import mock

import pytest

from videos.s3 import DELETE_BATCH_SIZE, ObjectStorage, PartialDeleteError, create_presigned_put, resolve_bucket


def test_physical_bucket_refs_have_no_prefix(settings):
    settings.STORAGE_BUCKETS = ["media-test", "archive"]

    assert resolve_bucket("archive") == ("archive", "")
    assert resolve_bucket(None) == ("media-test", "")


def test_workspace_slugs_live_under_the_main_bucket():
    assert resolve_bucket("acme") == ("media-test", "workspaces/acme/")


def test_put_object_returns_the_full_key():
    client = mock.Mock()
    storage = ObjectStorage(client)

    key = storage.put_object("acme", "hls/x/master.m3u8", b"#EXTM3U", "application/vnd.apple.mpegurl")

    assert key == "workspaces/acme/hls/x/master.m3u8"
    client.put_object.assert_called_once_with(
        Bucket="media-test",
        Key="workspaces/acme/hls/x/master.m3u8",
        Body=b"#EXTM3U",
        ContentType="application/vnd.apple.mpegurl",
    )


def test_list_keys_walks_every_page():
    client = mock.Mock()
    client.get_paginator.return_value.paginate.return_value = [
        {"Contents": [{"Key": "hls/x/master.m3u8"}, {"Key": "hls/x/360p/playlist.m3u8"}]},
        {},
        {"Contents": [{"Key": "hls/x/360p/segment_000.ts"}]},
    ]

    keys = list(ObjectStorage(client).list_keys("media-test", "hls/x/"))

    assert keys == ["hls/x/master.m3u8", "hls/x/360p/playlist.m3u8", "hls/x/360p/segment_000.ts"]
    client.get_paginator.assert_called_once_with("list_objects_v2")


def test_delete_keys_batches_requests():
    client = mock.Mock()
    client.delete_objects.return_value = {}
    keys = [f"k{i}" for i in range(DELETE_BATCH_SIZE + 5)]

    assert ObjectStorage(client).delete_keys("media-test", keys) == len(keys)

    batches = [c.kwargs["Delete"]["Objects"] for c in client.delete_objects.call_args_list]
    assert [len(b) for b in batches] == [DELETE_BATCH_SIZE, 5]
    assert batches[1][-1] == {"Key": keys[-1]}


def test_refused_keys_raise_after_every_batch():
    client = mock.Mock()
    client.delete_objects.side_effect = [
        {"Errors": [{"Key": "k3", "Code": "AccessDenied", "Message": "no"}]},
        {},
    ]
    keys = [f"k{i}" for i in range(DELETE_BATCH_SIZE + 5)]

    with pytest.raises(PartialDeleteError) as excinfo:
        ObjectStorage(client).delete_keys("media-test", keys)

    assert excinfo.value.keys == ["k3"]
    assert excinfo.value.bucket == "media-test"
    assert client.delete_objects.call_count == 2


def test_presigned_put_signs_the_prefixed_key(settings):
    settings.S3_PRESIGN_EXPIRE_SECONDS = 900
    client = mock.Mock()
    client.generate_presigned_url.return_value = "https://s3.test/signed"

    with mock.patch("videos.s3.get_presign_client", return_value=client):
        signed = create_presigned_put("acme", "uploads/a.mp4", content_type="video/mp4")

    assert signed == {"url": "https://s3.test/signed", "headers": {"Content-Type": "video/mp4"}}
    client.generate_presigned_url.assert_called_once_with(
        ClientMethod="put_object",
        Params={"Bucket": "media-test", "Key": "workspaces/acme/uploads/a.mp4"},
        ExpiresIn=900,
        HttpMethod="PUT",
    )
