from __future__ import annotations

import math
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import pytest

from core.geo import EARTH_RADIUS_KM, haversine_km, rank_by_distance
from core.models import Category, GeoPoint, PaymentMethod, Request, RequestStatus

ORIGIN = GeoPoint(0.0, 0.0)


def _request(request_id: str, location: Optional[GeoPoint]) -> Request:
    return Request(
        request_id=request_id,
        buyer_id="buyer",
        items=(),
        delivery_address="somewhere",
        location=location,
        tip=Decimal("0"),
        estimated_price=None,
        payment_method=PaymentMethod.CASH_ON_DELIVERY,
        purchase_location=None,
        category=Category.OTHER,
        status=RequestStatus.PENDING,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def test_haversine_same_point_is_zero() -> None:
    assert haversine_km(ORIGIN, ORIGIN) == 0.0


def test_haversine_one_degree_along_meridian() -> None:
    expected = EARTH_RADIUS_KM * math.radians(1.0)
    assert haversine_km(ORIGIN, GeoPoint(1.0, 0.0)) == pytest.approx(expected)


def test_haversine_paris_to_london() -> None:
    paris = GeoPoint(48.8566, 2.3522)
    london = GeoPoint(51.5074, -0.1278)
    assert haversine_km(paris, london) == pytest.approx(343.5, abs=2.0)
    assert haversine_km(london, paris) == pytest.approx(haversine_km(paris, london))


def test_rank_by_distance_nearest_first() -> None:
    far = _request("far", GeoPoint(0.09, 0.0))
    near = _request("near", GeoPoint(0.027, 0.0))

    ranked = rank_by_distance(ORIGIN, [far, near])

    assert [request.request_id for request, _ in ranked] == ["near", "far"]
    assert ranked[0][1] == pytest.approx(3.0, abs=0.1)
    assert ranked[1][1] == pytest.approx(10.0, abs=0.1)


def test_rank_by_distance_skips_requests_without_location() -> None:
    ranked = rank_by_distance(ORIGIN, [_request("nowhere", None), _request("here", GeoPoint(0.01, 0.01))])
    assert [request.request_id for request, _ in ranked] == ["here"]


def test_rank_by_distance_keeps_input_order_on_ties() -> None:
    east = _request("east", GeoPoint(0.0, 0.05))
    west = _request("west", GeoPoint(0.0, -0.05))
    ranked = rank_by_distance(ORIGIN, [west, east])
    assert [request.request_id for request, _ in ranked] == ["west", "east"]
