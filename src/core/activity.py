"""Activity lists for both roles, and the board that absorbs polled refreshes."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, TypeVar

from core.models import Match, Payment, Request, RequestStatus
from core.ports import StorePort

IN_PROGRESS = frozenset({RequestStatus.ON_PROGRESS, RequestStatus.RECEIPT_UPLOADED})

T = TypeVar("T")


@dataclass(frozen=True)
class ActivityEntry:
    request: Request
    match: Optional[Match]
    payment: Optional[Payment]


@dataclass(frozen=True)
class HelperOrders:
    in_progress: List[ActivityEntry]
    completed: List[ActivityEntry]


def helper_orders(store: StorePort, helper_id: str) -> HelperOrders:
    """Orders this helper currently holds or has finished, newest claim first.

    A request counts only while the helper's match is the latest one, so a
    request they handed back (and someone else took) drops off their list.
    """

    in_progress: List[ActivityEntry] = []
    completed: List[ActivityEntry] = []
    seen: set[str] = set()
    for match in store.list_matches_for_helper(helper_id):
        if match.request_id in seen:
            continue
        seen.add(match.request_id)
        request = store.get_request(match.request_id)
        if request is None:
            continue
        latest = store.latest_match(request.request_id)
        if latest is None or latest.match_id != match.match_id:
            continue
        entry = ActivityEntry(request, match, store.current_payment(request.request_id))
        if request.status in IN_PROGRESS:
            in_progress.append(entry)
        elif request.status == RequestStatus.COMPLETED:
            completed.append(entry)
    return HelperOrders(in_progress=in_progress, completed=completed)


def buyer_requests(store: StorePort, buyer_id: str) -> List[ActivityEntry]:
    entries = []
    for request in store.list_requests_by_buyer(buyer_id):
        match = None
        payment = None
        if request.status != RequestStatus.PENDING:
            match = store.latest_match(request.request_id)
            payment = store.current_payment(request.request_id)
        entries.append(ActivityEntry(request, match, payment))
    return entries


class ActivityBoard:
    """Local list state fed by periodic re-fetches.

    A snapshot replaces the list wholesale, except that requests with an
    operation still in commit keep their optimistic status until the
    operation settles.
    """

    def __init__(self) -> None:
        self._entries: List[ActivityEntry] = []
        self._in_flight: Dict[str, RequestStatus] = {}
        self.generation = 0

    def begin(self, request_id: str, optimistic_status: RequestStatus) -> None:
        self._in_flight[request_id] = optimistic_status

    def settle(self, request_id: str) -> None:
        self._in_flight.pop(request_id, None)

    async def track(self, request_id: str, optimistic_status: RequestStatus, operation: Callable[[], T]) -> T:
        """Run a blocking mutation off the loop while the row shows ``optimistic_status``.

        Snapshots that land meanwhile cannot revert the row; it settles when
        the operation returns or fails.
        """

        self.begin(request_id, optimistic_status)
        try:
            return await asyncio.to_thread(operation)
        finally:
            self.settle(request_id)

    def apply_snapshot(self, entries: List[ActivityEntry]) -> None:
        self._entries = list(entries)
        self.generation += 1

    def entries(self) -> List[ActivityEntry]:
        view = []
        for entry in self._entries:
            pending_status = self._in_flight.get(entry.request.request_id)
            if pending_status is not None and pending_status != entry.request.status:
                entry = replace(entry, request=replace(entry.request, status=pending_status))
            view.append(entry)
        return view
