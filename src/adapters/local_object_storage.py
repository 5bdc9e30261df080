"""Filesystem object storage adapter.

Writes uploads to ``<root>/<bucket>/<key>`` and returns the public URL they
will be served from. Upserts like a hosted bucket would.
"""

from __future__ import annotations

import logging
import os

from core.errors import UpstreamUnavailable, ValidationFailed

LOGGER = logging.getLogger(__name__)


class LocalObjectStorage:
    """ObjectStoragePort backed by a local directory."""

    def __init__(self, root_dir: str, public_base_url: str) -> None:
        self._root_dir = root_dir
        self._public_base_url = public_base_url.rstrip("/")

    def _path_for(self, bucket: str, key: str) -> str:
        for part in (bucket, key):
            if not part or "/" in part or "\\" in part or part in {".", ".."}:
                raise ValidationFailed("Invalid upload name.")
        return os.path.join(self._root_dir, bucket, key)

    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        if not data:
            raise ValidationFailed("Image data is empty.")
        path = self._path_for(bucket, key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as handle:
                handle.write(data)
        except OSError as exc:
            raise UpstreamUnavailable("Failed to upload image.") from exc
        LOGGER.debug("Stored %s bytes (%s) at %s", len(data), content_type, path)
        return f"{self._public_base_url}/{bucket}/{key}"
