from __future__ import annotations

import asyncio
import threading

import pytest

from conftest import post_request
from core.activity import ActivityBoard, buyer_requests, helper_orders
from core.config import PollingConfig
from core.errors import UpstreamUnavailable
from core.fulfillment import FulfillmentWorkflow
from core.matching import MatchingEngine
from core.models import ReceiptSubmission, RequestStatus
from core.polling import Poller


class MemoryStorage:
    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        return f"mem://{bucket}/{key}"


def test_helper_orders_split_by_status(store, clock) -> None:
    matching = MatchingEngine(store, clock)
    workflow = FulfillmentWorkflow(store, MemoryStorage(), clock)
    active = post_request(store, "buyer")
    done = post_request(store, "buyer")
    matching.accept(active.request_id, "helper")
    matching.accept(done.request_id, "helper")
    workflow.mark_receipt_uploaded(ReceiptSubmission(done.request_id, "helper", "12", b"img"))
    workflow.mark_completed(done.request_id, "buyer")

    orders = helper_orders(store, "helper")

    assert [entry.request.request_id for entry in orders.in_progress] == [active.request_id]
    assert [entry.request.request_id for entry in orders.completed] == [done.request_id]
    assert orders.completed[0].payment.amount_total == orders.completed[0].payment.final_price + done.tip


def test_handed_back_request_leaves_helper_list(store, clock) -> None:
    matching = MatchingEngine(store, clock)
    request = post_request(store, "buyer")
    matching.accept(request.request_id, "helper-1")
    FulfillmentWorkflow(store, MemoryStorage(), clock).reject(request.request_id, "helper-1")
    matching.accept(request.request_id, "helper-2")

    assert helper_orders(store, "helper-1").in_progress == []
    assert len(helper_orders(store, "helper-2").in_progress) == 1


def test_buyer_requests_include_match(store, clock) -> None:
    pending = post_request(store, "buyer")
    claimed = post_request(store, "buyer")
    MatchingEngine(store, clock).accept(claimed.request_id, "helper")

    entries = {entry.request.request_id: entry for entry in buyer_requests(store, "buyer")}

    assert entries[pending.request_id].match is None
    assert entries[claimed.request_id].match.helper_id == "helper"


def test_board_keeps_optimistic_status_until_settled(store, clock) -> None:
    request = post_request(store, "buyer")
    board = ActivityBoard()
    board.begin(request.request_id, RequestStatus.CANCELLED)

    board.apply_snapshot(buyer_requests(store, "buyer"))
    assert board.entries()[0].request.status == RequestStatus.CANCELLED

    board.settle(request.request_id)
    assert board.entries()[0].request.status == RequestStatus.PENDING
    assert board.generation == 1


def test_poller_survives_failed_ticks() -> None:
    calls = []
    results = []

    def fetch() -> int:
        calls.append(1)
        if len(calls) == 2:
            raise UpstreamUnavailable()
        return len(calls)

    poller = Poller(fetch, results.append, PollingConfig(interval_seconds=0))
    asyncio.run(poller.run(max_ticks=3))

    assert results == [1, 3]
    assert poller.ticks == 3
    assert poller.failures == 1


def test_poller_stops_when_asked() -> None:
    async def scenario() -> Poller:
        results = []
        poller = Poller(lambda: "snapshot", results.append, PollingConfig(interval_seconds=60))
        task = asyncio.create_task(poller.run())
        await asyncio.sleep(0)
        poller.stop()
        await asyncio.wait_for(task, timeout=5)
        return poller

    poller = asyncio.run(scenario())
    assert poller.ticks == 1


def test_tracked_operation_survives_refresh_while_in_commit(store) -> None:
    request = post_request(store, "buyer")
    board = ActivityBoard()
    board.apply_snapshot(buyer_requests(store, "buyer"))
    started = threading.Event()
    release = threading.Event()

    def slow_withdraw() -> str:
        started.set()
        release.wait(timeout=5)
        return "done"

    async def scenario() -> list:
        seen = []
        task = asyncio.create_task(board.track(request.request_id, RequestStatus.CANCELLED, slow_withdraw))
        await asyncio.to_thread(started.wait, 5)
        # A refresh lands mid-commit with the old row.
        board.apply_snapshot(buyer_requests(store, "buyer"))
        seen.append(board.entries()[0].request.status)
        release.set()
        seen.append(await task)
        seen.append(board.entries()[0].request.status)
        return seen

    assert asyncio.run(scenario()) == [RequestStatus.CANCELLED, "done", RequestStatus.PENDING]


def test_tracked_operation_settles_on_failure(store) -> None:
    request = post_request(store, "buyer")
    board = ActivityBoard()
    board.apply_snapshot(buyer_requests(store, "buyer"))

    def failing() -> None:
        raise UpstreamUnavailable()

    with pytest.raises(UpstreamUnavailable):
        asyncio.run(board.track(request.request_id, RequestStatus.ON_PROGRESS, failing))

    assert board.entries()[0].request.status == RequestStatus.PENDING
