"""Buyer-side request operations: post, edit and withdraw.

Edits and withdrawals are only allowed while the request is pending, and
that condition is part of the write itself so a buyer editing an old copy
cannot overwrite a request a helper has just claimed.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Iterable, Optional, Tuple

from core.errors import AlreadyClaimed, Forbidden, ValidationFailed
from core.matching import load_request
from core.models import (
    Category,
    GeoPoint,
    LineItem,
    PaymentMethod,
    Request,
    RequestChanges,
    RequestDraft,
    RequestStatus,
)
from core.money import parse_amount
from core.ports import StorePort

LOGGER = logging.getLogger(__name__)


def validate_location(location: Optional[GeoPoint]) -> Optional[GeoPoint]:
    if location is None:
        return None
    if not -90.0 <= location.latitude <= 90.0 or not -180.0 <= location.longitude <= 180.0:
        raise ValidationFailed("Location coordinates are out of range.")
    return location


def validate_items(items: Iterable[LineItem], category: Category) -> Tuple[LineItem, ...]:
    cleaned = []
    for item in items:
        name = item.name.strip()
        if not name:
            continue
        if item.quantity < 1:
            raise ValidationFailed(f"Quantity for {name} must be at least 1.")
        cleaned.append(replace(item, name=name, unit=item.unit.strip() or "pcs"))
    if not cleaned:
        raise ValidationFailed("Add at least one item.")
    # Pharmacy orders need a photo of the product or prescription.
    if category == Category.PHARMACY and not any(item.image for item in cleaned):
        raise ValidationFailed("For pharmacy, please upload at least one product photo.")
    return tuple(cleaned)


def _enum(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationFailed(f"Unknown {label}: {value}") from None


def validate_draft(draft: RequestDraft) -> RequestDraft:
    """Return a normalized copy of the draft or raise ValidationFailed."""

    if not draft.buyer_id:
        raise Forbidden("Please sign in to post a request.")
    address = (draft.delivery_address or "").strip()
    if not address:
        raise ValidationFailed("Delivery address is required.")
    category = _enum(Category, draft.category, "category")
    payment_method = _enum(PaymentMethod, draft.payment_method, "payment method")
    estimated = None
    if draft.estimated_price not in (None, ""):
        estimated = parse_amount(draft.estimated_price, "Estimated price")
    return replace(
        draft,
        items=validate_items(draft.items, category),
        delivery_address=address,
        tip=parse_amount(draft.tip if draft.tip not in (None, "") else "0", "Tip"),
        location=validate_location(draft.location),
        estimated_price=estimated,
        payment_method=payment_method.value,
        purchase_location=(draft.purchase_location or "").strip() or None,
        category=category.value,
    )


class RequestDesk:
    """Create, edit and withdraw requests on behalf of their buyer."""

    def __init__(self, store: StorePort) -> None:
        self._store = store

    def create_request(self, draft: RequestDraft) -> Request:
        request = self._store.insert_request(validate_draft(draft))
        LOGGER.info("Request %s posted by %s", request.request_id, request.buyer_id)
        return request

    def _owned_pending(self, request_id: str, buyer_id: str) -> Request:
        request = load_request(self._store, request_id)
        if request.buyer_id != buyer_id:
            raise Forbidden("Only the buyer can change this request.")
        if request.status != RequestStatus.PENDING:
            raise AlreadyClaimed("This request has already been accepted and can no longer change.")
        return request

    def update_request(self, request_id: str, buyer_id: str, changes: RequestChanges) -> Request:
        request = self._owned_pending(request_id, buyer_id)
        if changes.is_empty():
            return request

        address = None
        if changes.delivery_address is not None:
            address = changes.delivery_address.strip()
            if not address:
                raise ValidationFailed("Delivery address is required.")

        normalized = replace(
            changes,
            items=validate_items(changes.items, request.category) if changes.items is not None else None,
            delivery_address=address,
            tip=parse_amount(changes.tip, "Tip") if changes.tip not in (None, "") else None,
            location=validate_location(changes.location),
            estimated_price=(
                parse_amount(changes.estimated_price, "Estimated price")
                if changes.estimated_price not in (None, "")
                else None
            ),
            payment_method=(
                _enum(PaymentMethod, changes.payment_method, "payment method").value
                if changes.payment_method is not None
                else None
            ),
        )
        if self._store.update_pending_request(request_id, buyer_id, normalized) == 0:
            raise AlreadyClaimed("This request has already been accepted and can no longer change.")
        LOGGER.info("Request %s edited by %s", request_id, buyer_id)
        return load_request(self._store, request_id)

    def withdraw_request(self, request_id: str, buyer_id: str) -> RequestStatus:
        """Withdraw a pending request.

        Requests that were never matched are deleted. Reopened requests keep
        their match history, so they are cancelled instead of deleted.
        """

        self._owned_pending(request_id, buyer_id)
        if self._store.latest_match(request_id) is None:
            if self._store.delete_pending_request(request_id, buyer_id):
                LOGGER.info("Request %s deleted by %s", request_id, buyer_id)
                return RequestStatus.CANCELLED
        affected = self._store.transition_status(
            request_id, RequestStatus.PENDING, RequestStatus.CANCELLED
        )
        if affected == 0:
            raise AlreadyClaimed("This request has already been accepted and can no longer change.")
        LOGGER.info("Request %s cancelled by %s", request_id, buyer_id)
        return RequestStatus.CANCELLED
