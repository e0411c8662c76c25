import json
import time
import uuid
import logging
import pathlib
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlparse, unquote

from azure.core.exceptions import ResourceNotFoundError
from azure.storage.blob import ContainerClient, ContentSettings

from webflow_fetcher import FetchResult

logger = logging.getLogger("context_chat.store")

LATEST_CONTEXT_KEY = "latestContextUrl"
JSON_CONTENT = ContentSettings(content_type="application/json")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class BlobStore:
    """Durable JSON documents in one blob container, under an optional prefix."""

    def __init__(self, container: ContainerClient, prefix: str = ""):
        self.container = container
        self.prefix = prefix

    def put(self, name: str, data: str) -> str:
        blob_client = self.container.get_blob_client(self.prefix + name)
        blob_client.upload_blob(data.encode("utf-8"), overwrite=True, content_settings=JSON_CONTENT)
        logger.debug("Uploaded blob %s (%d bytes)", blob_client.blob_name, len(data))
        return blob_client.url

    def read_url(self, url: str) -> str:
        # URLs from put() already carry the prefix.
        blob_client = self.container.get_blob_client(self.blob_name_from_url(url))
        return blob_client.download_blob().readall().decode("utf-8")

    def blob_name_from_url(self, url: str) -> str:
        path = unquote(urlparse(url).path).lstrip("/")
        container_prefix = f"{self.container.container_name}/"
        if path.startswith(container_prefix):
            return path[len(container_prefix):]
        return path


class ConfigStore:
    """Small key/value store; each key is a JSON blob ``<prefix><key>.json`` holding ``{"value": ...}``."""

    def __init__(self, container: ContainerClient, prefix: str = "config/"):
        self.container = container
        self.prefix = prefix

    def _blob_client(self, key: str):
        return self.container.get_blob_client(f"{self.prefix}{key}.json")

    def get(self, key: str) -> Optional[Any]:
        blob_client = self._blob_client(key)
        try:
            raw = blob_client.download_blob().readall()
        except ResourceNotFoundError:
            return None
        try:
            data = json.loads(raw)
        except ValueError as exc:
            logger.warning("Config key %s holds invalid JSON: %s", key, exc)
            return None
        if not isinstance(data, dict):
            return None
        return data.get("value")

    def upsert(self, key: str, value: Any) -> None:
        payload = {"value": value, "updated_at": now_iso()}
        self._blob_client(key).upload_blob(
            json.dumps(payload), overwrite=True, content_settings=JSON_CONTENT
        )


class ContextRepository:
    """Versioned context blobs plus a ``latestContextUrl`` pointer to the newest one."""

    def __init__(self, blobs: BlobStore, config: ConfigStore):
        self.blobs = blobs
        self.config = config

    def publish(self, result: FetchResult) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        name = f"context/context-{stamp}-{uuid.uuid4().hex[:8]}.json"
        url = self.blobs.put(name, result.to_json())
        # Pointer moves only after the blob is fully written.
        self.config.upsert(LATEST_CONTEXT_KEY, url)
        logger.info("Published context %s", url)
        return url

    def latest_url(self) -> Optional[str]:
        value = self.config.get(LATEST_CONTEXT_KEY)
        return value if isinstance(value, str) and value else None

    def load_latest(self) -> Optional[FetchResult]:
        url = self.latest_url()
        if not url:
            logger.warning("No %s pointer found", LATEST_CONTEXT_KEY)
            return None
        try:
            text = self.blobs.read_url(url)
        except ResourceNotFoundError:
            logger.warning("Context blob referenced by %s is missing: %s", LATEST_CONTEXT_KEY, url)
            return None
        return FetchResult.model_validate_json(text)


class ContextCache:
    """In-process holder for the latest context with a TTL and manual invalidation.

    ``ttl_seconds <= 0`` keeps the entry until ``invalidate()`` is called.
    """

    def __init__(self, ttl_seconds: float = 300.0):
        self.ttl_seconds = ttl_seconds
        self._value: Optional[FetchResult] = None
        self._stored_at: float = 0.0
        self.cached_at: Optional[str] = None

    def get(self) -> Optional[FetchResult]:
        if self._value is None:
            return None
        if self.ttl_seconds > 0 and time.monotonic() - self._stored_at > self.ttl_seconds:
            logger.debug("Context cache expired")
            self.invalidate()
            return None
        return self._value

    def set(self, value: FetchResult) -> None:
        self._value = value
        self._stored_at = time.monotonic()
        self.cached_at = now_iso()

    def invalidate(self) -> None:
        self._value = None
        self._stored_at = 0.0
        self.cached_at = None

    def is_ready(self) -> bool:
        return self.get() is not None


def save_local_snapshot(result: FetchResult, path: pathlib.Path) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(result.to_json(), encoding="utf-8")
    return path
