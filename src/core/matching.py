"""Accept/claim protocol (core domain).

Two helpers racing on the same request must produce exactly one winner. The
store's guarded status write is the only arbiter: nothing here reads a
status and then writes based on it without re-checking at commit.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional

from core.errors import AlreadyClaimed, Forbidden, NotFound, PartialCommit, UpstreamUnavailable
from core.models import AcceptOutcome, Match, Request, RequestStatus
from core.ports import StorePort

LOGGER = logging.getLogger(__name__)

# Statuses in which a request still belongs to somebody's active claim.
CLAIMED_STATUSES = frozenset({RequestStatus.ON_PROGRESS, RequestStatus.RECEIPT_UPLOADED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def load_request(store: StorePort, request_id: str) -> Request:
    request = store.get_request(request_id)
    if request is None:
        raise NotFound()
    return request


def active_match(store: StorePort, request: Request) -> Optional[Match]:
    """Return the match that currently owns the request, if any.

    The most recent match is authoritative; older ones are history left by
    rejected claims. A pending request has no active match.
    """

    if request.status in (RequestStatus.PENDING, RequestStatus.CANCELLED):
        return None
    return store.latest_match(request.request_id)


class MatchingEngine:
    """Owns the pending -> on_progress transition and the Match record."""

    def __init__(self, store: StorePort, clock: Callable[[], datetime] = _utcnow) -> None:
        self._store = store
        self._clock = clock

    def accept(self, request_id: str, helper_id: str) -> AcceptOutcome:
        """Claim a pending request for ``helper_id``."""

        if not helper_id:
            raise Forbidden("Please sign in before accepting a request.")

        request = load_request(self._store, request_id)
        # Self-acceptance is refused whatever the status.
        if request.buyer_id == helper_id:
            raise Forbidden("You cannot accept your own request.")
        if request.status in (RequestStatus.COMPLETED, RequestStatus.CANCELLED):
            raise NotFound("Request is no longer available.")
        if request.status in CLAIMED_STATUSES:
            previous = self._own_claim(request, helper_id)
            if previous is not None:
                return previous
            raise AlreadyClaimed()

        affected = self._store.transition_status(
            request_id, RequestStatus.PENDING, RequestStatus.ON_PROGRESS
        )
        if affected == 0:
            LOGGER.warning("Accept lost race for %s (helper %s)", request_id, helper_id)
            if self._store.get_request(request_id) is None:
                raise NotFound()
            raise AlreadyClaimed()

        try:
            match = self._store.insert_match(request_id, helper_id, request.buyer_id, self._clock())
        except UpstreamUnavailable as exc:
            self._compensate(request_id, exc)
            raise UpstreamUnavailable("Could not record your claim. Please try again.") from exc

        LOGGER.info("Request %s accepted by %s", request_id, helper_id)
        # Built from what was written; no read may fail after the claim landed.
        claimed = replace(request, status=RequestStatus.ON_PROGRESS)
        return AcceptOutcome(request=claimed, match=match)

    def _own_claim(self, request: Request, helper_id: str) -> Optional[AcceptOutcome]:
        """Outcome of an earlier accept by the same helper, if that is what holds the request.

        A retried accept whose first attempt already landed must not be told
        it lost.
        """

        if request.status != RequestStatus.ON_PROGRESS:
            return None
        match = self._store.latest_match(request.request_id)
        if match is None or match.helper_id != helper_id:
            return None
        LOGGER.info("Accept of %s by %s already recorded", request.request_id, helper_id)
        return AcceptOutcome(request=request, match=match)

    def _compensate(self, request_id: str, cause: Exception) -> None:
        """Undo the status flip after a failed match insert.

        The revert is guarded on on_progress so it can never clobber a later
        transition. If it cannot land the request is stuck without a match.
        """

        try:
            reverted = self._store.transition_status(
                request_id, RequestStatus.ON_PROGRESS, RequestStatus.PENDING
            )
        except UpstreamUnavailable:
            reverted = 0
        if reverted == 0:
            LOGGER.exception("Partial commit on accept of %s", request_id, exc_info=cause)
            raise PartialCommit(request_id) from cause
        LOGGER.warning("Match insert failed for %s, status reverted to pending", request_id)
