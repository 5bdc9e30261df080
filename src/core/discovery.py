"""Helper-facing list of open requests, nearest first when we know where.

Unlike the raw ranker, this view keeps requests without coordinates: they
go after every ranked one so they stay visible.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from core.geo import rank_by_distance
from core.models import Category, DiscoveryMode, GeoPoint, Request
from core.ports import StorePort

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpenRequest:
    request: Request
    distance_km: Optional[float]


def _newest_first(requests: List[Request]) -> List[Request]:
    return sorted(requests, key=lambda request: request.created_at, reverse=True)


class DiscoveryView:
    def __init__(self, store: StorePort) -> None:
        self._store = store

    def reference_point(
        self, viewer_id: str, mode: DiscoveryMode, device_location: Optional[GeoPoint] = None
    ) -> Optional[GeoPoint]:
        if mode == DiscoveryMode.NEAR_ME:
            return device_location
        if mode == DiscoveryMode.NEAR_HOME and viewer_id:
            profile = self._store.get_user(viewer_id)
            return profile.home if profile is not None else None
        return None

    def list_open_requests(
        self,
        viewer_id: Optional[str],
        mode: DiscoveryMode = DiscoveryMode.LATEST,
        device_location: Optional[GeoPoint] = None,
        category: Optional[Category] = None,
    ) -> List[OpenRequest]:
        """Pending requests not posted by the viewer."""

        candidates = _newest_first(
            self._store.list_pending_requests(exclude_buyer_id=viewer_id or None, category=category)
        )
        reference = self.reference_point(viewer_id or "", mode, device_location)
        if reference is None:
            if mode != DiscoveryMode.LATEST:
                LOGGER.debug("No reference point for %s, falling back to newest first", mode.value)
            return [OpenRequest(request, None) for request in candidates]

        ranked = [OpenRequest(request, km) for request, km in rank_by_distance(reference, candidates)]
        unranked = [OpenRequest(request, None) for request in candidates if request.location is None]
        return ranked + unranked
