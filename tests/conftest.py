from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from adapters.sqlite_store import SQLiteStore
from core.models import GeoPoint, LineItem, Request, RequestDraft, UserProfile
from core.requests import validate_draft


class TickingClock:
    """Returns a strictly increasing UTC time, one second per call."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def store(tmp_path, clock) -> SQLiteStore:
    db = SQLiteStore(str(tmp_path / "helpmate.db"), clock=clock)
    db.init_db()
    return db


def make_draft(
    buyer_id: str = "buyer",
    *,
    tip: str = "5.00",
    location: Optional[GeoPoint] = None,
    category: str = "groceries",
    items: tuple = (LineItem(name="Milk", quantity=2, unit="l"),),
    address: str = "12 Market Street",
) -> RequestDraft:
    return RequestDraft(
        buyer_id=buyer_id,
        items=items,
        delivery_address=address,
        tip=tip,
        location=location,
        category=category,
    )


def post_request(store: SQLiteStore, buyer_id: str = "buyer", **kwargs) -> Request:
    return store.insert_request(validate_draft(make_draft(buyer_id, **kwargs)))


def add_user(store: SQLiteStore, user_id: str, **kwargs) -> UserProfile:
    profile = UserProfile(user_id=user_id, name=kwargs.pop("name", user_id.title()), **kwargs)
    store.upsert_user(profile)
    return profile
