"""Ports (interfaces) used by the core lifecycle.

Ports define the minimal contracts for the external collaborators (store,
object storage, realtime feed, auth, notifications) so that the core can be
reused with different backends.

Every guarded write returns the number of affected rows; callers treat zero
as a lost race, never as success.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, List, Mapping, Optional, Protocol

from core.models import (
    AuthUser,
    Category,
    LifecycleEvent,
    Match,
    Message,
    Payment,
    RealtimeEvent,
    Request,
    RequestChanges,
    RequestDraft,
    RequestStatus,
    UserProfile,
)


class StorePort(Protocol):
    """Typed access to the relational store."""

    def get_request(self, request_id: str) -> Optional[Request]:
        ...

    def insert_request(self, draft: RequestDraft) -> Request:
        ...

    def update_pending_request(self, request_id: str, buyer_id: str, changes: RequestChanges) -> int:
        ...

    def delete_pending_request(self, request_id: str, buyer_id: str) -> int:
        ...

    def transition_status(
        self, request_id: str, expected: RequestStatus, new_status: RequestStatus
    ) -> int:
        ...

    def list_pending_requests(
        self, exclude_buyer_id: Optional[str] = None, category: Optional[Category] = None
    ) -> List[Request]:
        ...

    def list_requests_by_buyer(self, buyer_id: str) -> List[Request]:
        ...

    def insert_match(self, request_id: str, helper_id: str, buyer_id: str, accepted_at: datetime) -> Match:
        ...

    def latest_match(self, request_id: str) -> Optional[Match]:
        ...

    def list_matches_for_helper(self, helper_id: str) -> List[Match]:
        ...

    def insert_payment(
        self,
        request_id: str,
        helper_id: str,
        final_price: Decimal,
        amount_total: Decimal,
        receipt_url: str,
    ) -> Payment:
        ...

    def supersede_payment(self, payment_id: int) -> int:
        ...

    def current_payment(self, request_id: str) -> Optional[Payment]:
        ...

    def insert_message(self, request_id: str, sender_id: str, content: str) -> Message:
        ...

    def list_messages(self, request_id: str) -> List[Message]:
        ...

    def mark_messages_seen(self, request_id: str, viewer_id: str, seen_at: datetime) -> int:
        ...

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        ...

    def upsert_user(self, profile: UserProfile) -> None:
        ...


class ObjectStoragePort(Protocol):
    """Binary uploads (receipts, profile pictures)."""

    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        ...


class RealtimePort(Protocol):
    """Push change notifications, consumed only by the messaging channel."""

    def subscribe(self, table: str, filters: Mapping[str, str]) -> AsyncIterator[RealtimeEvent]:
        ...


class AuthPort(Protocol):
    """Session lookup; the core only needs an opaque user id."""

    def current_user(self) -> Optional[AuthUser]:
        ...


class NotifierPort(Protocol):
    """Notification operations used by the app layer after lifecycle changes."""

    async def send(self, event: LifecycleEvent) -> None:
        ...
