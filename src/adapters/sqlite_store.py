"""SQLite store adapter.

Implements the core StorePort on a single SQLite database. Every status
change is a guarded ``UPDATE ... WHERE status = ?`` and reports the affected
row count, which is what arbitrates concurrent claims.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterator, List, Optional

from core.errors import UpstreamUnavailable
from core.models import (
    Category,
    Match,
    Message,
    Payment,
    PaymentStatus,
    RealtimeEvent,
    Request,
    RequestChanges,
    RequestDraft,
    RequestStatus,
    UserProfile,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _money(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


class SQLiteStore:
    """Thin SQLite wrapper that satisfies the StorePort contract."""

    def __init__(
        self,
        db_path: str,
        on_change: Optional[Callable[[RealtimeEvent], None]] = None,
        clock: Callable[[], datetime] = _utcnow,
        timeout: float = 10.0,
    ) -> None:
        self._db_path = db_path
        self._on_change = on_change
        self._clock = clock
        self._timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=self._timeout)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success and map driver errors."""

        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise UpstreamUnavailable() from exc
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise UpstreamUnavailable() from exc
        finally:
            conn.close()

    def _publish(self, event_type: str, table: str, row: dict) -> None:
        if self._on_change is not None:
            self._on_change(RealtimeEvent(event_type=event_type, table=table, row=row))

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - requests: one row per buyer ask, status is the lifecycle state
        - matches: append-only claims, the latest per request is active
        - payments: receipt records, older ones superseded by newer
        - messages: append-only chat lines with seen flags
        - users: profile data (name, phone, home location)
        """

        with self._session() as conn:
            # helper_id is a legacy denormalized column. It is read for
            # role resolution on old rows and never written.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS requests (
                    request_id TEXT PRIMARY KEY,
                    buyer_id TEXT NOT NULL,
                    item_list TEXT NOT NULL,
                    delivery_address TEXT NOT NULL,
                    latitude REAL,
                    longitude REAL,
                    tip TEXT NOT NULL DEFAULT '0',
                    estimated_price TEXT,
                    payment_method TEXT NOT NULL,
                    purchase_location TEXT,
                    category TEXT NOT NULL,
                    status TEXT NOT NULL,
                    helper_id TEXT,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_requests_status ON requests (status, created_at)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS matches (
                    match_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id TEXT NOT NULL,
                    helper_id TEXT NOT NULL,
                    buyer_id TEXT NOT NULL,
                    accepted_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_matches_request ON matches (request_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_matches_helper ON matches (helper_id)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS payments (
                    payment_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id TEXT NOT NULL,
                    helper_id TEXT NOT NULL,
                    final_price TEXT NOT NULL,
                    amount_total TEXT NOT NULL,
                    receipt_url TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    seen INTEGER NOT NULL DEFAULT 0,
                    seen_at TIMESTAMP
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_request ON messages (request_id, created_at)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT,
                    phone TEXT,
                    profile_pic TEXT,
                    latitude REAL,
                    longitude REAL,
                    address TEXT
                )
                """
            )

    # Requests

    def get_request(self, request_id: str) -> Optional[Request]:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM requests WHERE request_id = ?", (request_id,)
            ).fetchone()
        return Request.from_row(dict(row)) if row else None

    def insert_request(self, draft: RequestDraft) -> Request:
        request_id = str(uuid.uuid4())
        location = draft.location
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO requests (
                    request_id, buyer_id, item_list, delivery_address, latitude, longitude,
                    tip, estimated_price, payment_method, purchase_location, category,
                    status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request_id,
                    draft.buyer_id,
                    json.dumps([item.as_dict() for item in draft.items]),
                    draft.delivery_address,
                    location.latitude if location else None,
                    location.longitude if location else None,
                    str(draft.tip),
                    _money(draft.estimated_price),
                    draft.payment_method,
                    draft.purchase_location,
                    draft.category,
                    RequestStatus.PENDING.value,
                    _ts(self._clock()),
                ),
            )
            row = conn.execute(
                "SELECT * FROM requests WHERE request_id = ?", (request_id,)
            ).fetchone()
        return Request.from_row(dict(row))

    def update_pending_request(self, request_id: str, buyer_id: str, changes: RequestChanges) -> int:
        assignments: dict[str, object] = {}
        if changes.items is not None:
            assignments["item_list"] = json.dumps([item.as_dict() for item in changes.items])
        if changes.delivery_address is not None:
            assignments["delivery_address"] = changes.delivery_address
        if changes.tip is not None:
            assignments["tip"] = str(changes.tip)
        if changes.location is not None:
            assignments["latitude"] = changes.location.latitude
            assignments["longitude"] = changes.location.longitude
        if changes.estimated_price is not None:
            assignments["estimated_price"] = _money(changes.estimated_price)
        if changes.purchase_location is not None:
            assignments["purchase_location"] = changes.purchase_location or None
        if changes.payment_method is not None:
            assignments["payment_method"] = changes.payment_method
        if not assignments:
            return 0

        # Column names come from the fixed set above, never from input.
        set_clause = ", ".join(f"{column} = ?" for column in assignments)
        with self._session() as conn:
            cur = conn.execute(
                f"UPDATE requests SET {set_clause} "
                "WHERE request_id = ? AND buyer_id = ? AND status = ?",
                (*assignments.values(), request_id, buyer_id, RequestStatus.PENDING.value),
            )
            return cur.rowcount

    def delete_pending_request(self, request_id: str, buyer_id: str) -> int:
        """Delete a pending request that never had a match."""

        with self._session() as conn:
            cur = conn.execute(
                """
                DELETE FROM requests
                WHERE request_id = ? AND buyer_id = ? AND status = ?
                  AND NOT EXISTS (SELECT 1 FROM matches WHERE matches.request_id = requests.request_id)
                """,
                (request_id, buyer_id, RequestStatus.PENDING.value),
            )
            return cur.rowcount

    def transition_status(
        self, request_id: str, expected: RequestStatus, new_status: RequestStatus
    ) -> int:
        """Compare-and-swap on the status column."""

        with self._session() as conn:
            cur = conn.execute(
                "UPDATE requests SET status = ? WHERE request_id = ? AND status = ?",
                (new_status.value, request_id, expected.value),
            )
            return cur.rowcount

    def list_pending_requests(
        self, exclude_buyer_id: Optional[str] = None, category: Optional[Category] = None
    ) -> List[Request]:
        query = "SELECT * FROM requests WHERE status = ?"
        params: list = [RequestStatus.PENDING.value]
        if exclude_buyer_id:
            query += " AND buyer_id != ?"
            params.append(exclude_buyer_id)
        if category is not None:
            query += " AND category = ?"
            params.append(category.value)
        query += " ORDER BY created_at DESC"
        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Request.from_row(dict(row)) for row in rows]

    def list_requests_by_buyer(self, buyer_id: str) -> List[Request]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM requests WHERE buyer_id = ? ORDER BY created_at DESC",
                (buyer_id,),
            ).fetchall()
        return [Request.from_row(dict(row)) for row in rows]

    # Matches

    def insert_match(self, request_id: str, helper_id: str, buyer_id: str, accepted_at: datetime) -> Match:
        with self._session() as conn:
            cur = conn.execute(
                """
                INSERT INTO matches (request_id, helper_id, buyer_id, accepted_at)
                VALUES (?, ?, ?, ?)
                """,
                (request_id, helper_id, buyer_id, _ts(accepted_at)),
            )
            match_id = cur.lastrowid
        return Match(
            match_id=match_id,
            request_id=request_id,
            helper_id=helper_id,
            buyer_id=buyer_id,
            accepted_at=accepted_at,
        )

    def latest_match(self, request_id: str) -> Optional[Match]:
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT * FROM matches WHERE request_id = ?
                ORDER BY accepted_at DESC, match_id DESC LIMIT 1
                """,
                (request_id,),
            ).fetchone()
        return Match.from_row(dict(row)) if row else None

    def list_matches_for_helper(self, helper_id: str) -> List[Match]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM matches WHERE helper_id = ?
                ORDER BY accepted_at DESC, match_id DESC
                """,
                (helper_id,),
            ).fetchall()
        return [Match.from_row(dict(row)) for row in rows]

    # Payments

    def insert_payment(
        self,
        request_id: str,
        helper_id: str,
        final_price: Decimal,
        amount_total: Decimal,
        receipt_url: str,
    ) -> Payment:
        """Insert a pending payment, superseding any earlier pending one."""

        with self._session() as conn:
            conn.execute(
                "UPDATE payments SET status = ? WHERE request_id = ? AND status = ?",
                (PaymentStatus.SUPERSEDED.value, request_id, PaymentStatus.PENDING.value),
            )
            cur = conn.execute(
                """
                INSERT INTO payments (
                    request_id, helper_id, final_price, amount_total, receipt_url, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request_id,
                    helper_id,
                    str(final_price),
                    str(amount_total),
                    receipt_url,
                    PaymentStatus.PENDING.value,
                    _ts(self._clock()),
                ),
            )
            row = conn.execute(
                "SELECT * FROM payments WHERE payment_id = ?", (cur.lastrowid,)
            ).fetchone()
        return Payment.from_row(dict(row))

    def supersede_payment(self, payment_id: int) -> int:
        with self._session() as conn:
            cur = conn.execute(
                "UPDATE payments SET status = ? WHERE payment_id = ? AND status = ?",
                (PaymentStatus.SUPERSEDED.value, payment_id, PaymentStatus.PENDING.value),
            )
            return cur.rowcount

    def current_payment(self, request_id: str) -> Optional[Payment]:
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT * FROM payments WHERE request_id = ? AND status != ?
                ORDER BY payment_id DESC LIMIT 1
                """,
                (request_id, PaymentStatus.SUPERSEDED.value),
            ).fetchone()
        return Payment.from_row(dict(row)) if row else None

    # Messages

    def insert_message(self, request_id: str, sender_id: str, content: str) -> Message:
        # The store assigns created_at; clients never order by their own clock.
        row = {
            "id": uuid.uuid4().hex,
            "request_id": request_id,
            "sender_id": sender_id,
            "content": content,
            "created_at": _ts(self._clock()),
            "seen": 0,
            "seen_at": None,
        }
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO messages (id, request_id, sender_id, content, created_at, seen, seen_at)
                VALUES (:id, :request_id, :sender_id, :content, :created_at, :seen, :seen_at)
                """,
                row,
            )
        self._publish("insert", "messages", row)
        return Message.from_row(row)

    def list_messages(self, request_id: str) -> List[Message]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE request_id = ? ORDER BY created_at ASC, id ASC",
                (request_id,),
            ).fetchall()
        return [Message.from_row(dict(row)) for row in rows]

    def mark_messages_seen(self, request_id: str, viewer_id: str, seen_at: datetime) -> int:
        """Flip every unseen message not sent by the viewer in one statement."""

        stamp = _ts(seen_at)
        with self._session() as conn:
            cur = conn.execute(
                """
                UPDATE messages SET seen = 1, seen_at = ?
                WHERE request_id = ? AND sender_id != ? AND seen = 0
                """,
                (stamp, request_id, viewer_id),
            )
            flipped = cur.rowcount
            rows = []
            if flipped:
                rows = conn.execute(
                    """
                    SELECT * FROM messages
                    WHERE request_id = ? AND sender_id != ? AND seen_at = ?
                    """,
                    (request_id, viewer_id, stamp),
                ).fetchall()
        for row in rows:
            self._publish("update", "messages", dict(row))
        return flipped

    # Users

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return UserProfile.from_row(dict(row)) if row else None

    def upsert_user(self, profile: UserProfile) -> None:
        home = profile.home
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO users (user_id, name, email, phone, profile_pic, latitude, longitude, address)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    name = excluded.name,
                    email = excluded.email,
                    phone = excluded.phone,
                    profile_pic = excluded.profile_pic,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    address = excluded.address
                """,
                (
                    profile.user_id,
                    profile.name,
                    profile.email,
                    profile.phone,
                    profile.profile_pic,
                    home.latitude if home else None,
                    home.longitude if home else None,
                    profile.address,
                ),
            )
