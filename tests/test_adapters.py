from __future__ import annotations

import asyncio

import pytest

from adapters.env_auth import EnvAuth
from adapters.local_object_storage import LocalObjectStorage
from adapters.memory_realtime import InProcessRealtime
from core.errors import UpstreamUnavailable, ValidationFailed
from core.models import RealtimeEvent


def test_local_storage_writes_and_returns_public_url(tmp_path) -> None:
    storage = LocalObjectStorage(str(tmp_path), "http://cdn.local/uploads/")

    url = storage.upload("receipts", "r1_1.png", b"data", "image/png")

    assert url == "http://cdn.local/uploads/receipts/r1_1.png"
    assert (tmp_path / "receipts" / "r1_1.png").read_bytes() == b"data"


@pytest.mark.parametrize("bucket,key", [("receipts", "../escape.png"), ("..", "x.png"), ("receipts", "")])
def test_local_storage_rejects_unsafe_names(tmp_path, bucket, key) -> None:
    with pytest.raises(ValidationFailed):
        LocalObjectStorage(str(tmp_path), "http://cdn").upload(bucket, key, b"data", "image/png")


def test_local_storage_rejects_empty_data(tmp_path) -> None:
    with pytest.raises(ValidationFailed):
        LocalObjectStorage(str(tmp_path), "http://cdn").upload("receipts", "a.png", b"", "image/png")


def test_local_storage_maps_io_errors(tmp_path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    with pytest.raises(UpstreamUnavailable):
        LocalObjectStorage(str(blocker), "http://cdn").upload("receipts", "a.png", b"data", "image/png")


def test_realtime_delivers_matching_events_only() -> None:
    async def scenario() -> list:
        hub = InProcessRealtime()
        subscription = hub.subscribe("messages", {"request_id": "r1"})
        hub.publish(RealtimeEvent("insert", "messages", {"id": "a", "request_id": "r2"}))
        hub.publish(RealtimeEvent("insert", "requests", {"id": "b", "request_id": "r1"}))
        hub.publish(RealtimeEvent("insert", "messages", {"id": "c", "request_id": "r1"}))
        hub.close()
        return [event.row["id"] async for event in subscription]

    assert asyncio.run(scenario()) == ["c"]


def test_realtime_drop_raises_upstream_error() -> None:
    async def scenario() -> int:
        hub = InProcessRealtime()
        subscription = hub.subscribe("messages")
        hub.drop_all()
        with pytest.raises(UpstreamUnavailable):
            await subscription.__anext__()
        return hub.subscriber_count

    assert asyncio.run(scenario()) == 0


def test_env_auth_reads_identity(monkeypatch) -> None:
    monkeypatch.setenv("HELPMATE_USER_ID", " user-1 ")
    monkeypatch.setenv("HELPMATE_USER_EMAIL", "u1@example.com")

    user = EnvAuth().current_user()
    assert user.id == "user-1"
    assert user.email == "u1@example.com"
    assert EnvAuth("override").current_user().id == "override"

    monkeypatch.delenv("HELPMATE_USER_ID")
    assert EnvAuth().current_user() is None
