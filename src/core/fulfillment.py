"""Post-match stages: receipt upload, completion and helper back-out.

Every status change here is a guarded write against the status the caller
observed, so a stale client can never move a request backwards or skip a
stage.
"""

from __future__ import annotations

import logging
import os
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable

from core.errors import (
    AlreadyClaimed,
    Forbidden,
    HelpmateError,
    NotFound,
    UpstreamUnavailable,
    ValidationFailed,
)
from core.matching import active_match, load_request
from core.models import Payment, ReceiptOutcome, ReceiptSubmission, Request, RequestStatus
from core.money import parse_amount, round_money
from core.ports import ObjectStoragePort, StorePort

LOGGER = logging.getLogger(__name__)

RECEIPT_BUCKET = "receipts"

_CONTENT_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def receipt_key(request_id: str, filename: str, now: datetime) -> tuple[str, str]:
    """Return (object key, content type) for a receipt image."""

    ext = os.path.splitext(filename)[1].lstrip(".").lower() or "jpg"
    content_type = _CONTENT_TYPES.get(ext, "image/jpeg")
    millis = int(now.timestamp() * 1000)
    return f"{request_id}_{millis}.{ext}", content_type


class FulfillmentWorkflow:
    """Drives on_progress -> receipt_uploaded -> completed, plus Reject."""

    def __init__(
        self,
        store: StorePort,
        storage: ObjectStoragePort,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._storage = storage
        self._clock = clock

    def _require_helper(self, request: Request, helper_id: str) -> None:
        match = active_match(self._store, request)
        if match is None or match.helper_id != helper_id:
            raise Forbidden("Only the helper handling this request can do that.")

    def _advance(self, request: Request, expected: RequestStatus, new_status: RequestStatus) -> Request:
        request_id = request.request_id
        affected = self._store.transition_status(request_id, expected, new_status)
        if affected == 0:
            current = self._store.get_request(request_id)
            if current is None:
                raise NotFound()
            LOGGER.warning(
                "Transition %s -> %s lost for %s (now %s)",
                expected.value,
                new_status.value,
                request_id,
                current.status.value,
            )
            raise AlreadyClaimed("This request changed in the meantime. Please refresh.")
        # The guarded write succeeded, so the new status is known without a re-read.
        return replace(request, status=new_status)

    def mark_receipt_uploaded(self, submission: ReceiptSubmission) -> ReceiptOutcome:
        """Record the helper's purchase: upload the receipt, create a payment, advance."""

        final_price = parse_amount(submission.final_price, "Final price")
        if not submission.image:
            raise ValidationFailed("Please attach a receipt image.")

        request = load_request(self._store, submission.request_id)
        self._require_helper(request, submission.helper_id)
        if request.status == RequestStatus.RECEIPT_UPLOADED:
            previous = self._store.current_payment(request.request_id)
            if (
                previous is not None
                and previous.helper_id == submission.helper_id
                and previous.final_price == final_price
            ):
                LOGGER.info("Receipt for %s already recorded", request.request_id)
                return ReceiptOutcome(request=request, payment=previous)
        if request.status != RequestStatus.ON_PROGRESS:
            raise AlreadyClaimed("A receipt can only be uploaded while the order is in progress.")

        key, content_type = receipt_key(request.request_id, submission.filename, self._clock())
        try:
            receipt_url = self._storage.upload(RECEIPT_BUCKET, key, submission.image, content_type)
        except UpstreamUnavailable:
            LOGGER.warning("Receipt upload failed for %s", request.request_id)
            raise

        total = round_money(final_price + request.tip)
        payment = self._store.insert_payment(
            request.request_id, submission.helper_id, final_price, total, receipt_url
        )
        try:
            updated = self._advance(request, RequestStatus.ON_PROGRESS, RequestStatus.RECEIPT_UPLOADED)
        except HelpmateError:
            self._withdraw_payment(payment)
            raise

        LOGGER.info(
            "Receipt uploaded for %s: price=%s total=%s", request.request_id, final_price, total
        )
        return ReceiptOutcome(request=updated, payment=payment)

    def _withdraw_payment(self, payment: Payment) -> None:
        """Supersede a payment whose status flip did not land.

        The payment and the flip belong together; a payment must never be
        current on a request that is still in progress.
        """

        try:
            self._store.supersede_payment(payment.payment_id)
        except UpstreamUnavailable:
            LOGGER.exception(
                "Payment %s for %s left pending after a failed status change",
                payment.payment_id,
                payment.request_id,
            )

    def mark_completed(self, request_id: str, actor_id: str) -> Request:
        """Close the order once the receipt is in. Buyer or helper may confirm."""

        request = load_request(self._store, request_id)
        if actor_id != request.buyer_id:
            self._require_helper(request, actor_id)
        if request.status == RequestStatus.COMPLETED:
            raise AlreadyClaimed("This order is already completed.")
        if request.status != RequestStatus.RECEIPT_UPLOADED:
            raise AlreadyClaimed("The order can be completed only after the receipt is uploaded.")

        updated = self._advance(request, RequestStatus.RECEIPT_UPLOADED, RequestStatus.COMPLETED)
        LOGGER.info("Request %s completed by %s", request_id, actor_id)
        return updated

    def reject(self, request_id: str, helper_id: str) -> Request:
        """Helper backs out: on_progress -> pending, keeping the match as history."""

        request = load_request(self._store, request_id)
        self._require_helper(request, helper_id)
        if request.status != RequestStatus.ON_PROGRESS:
            raise AlreadyClaimed("Only an order in progress can be handed back.")

        updated = self._advance(request, RequestStatus.ON_PROGRESS, RequestStatus.PENDING)
        LOGGER.info("Request %s handed back by %s", request_id, helper_id)
        return updated
