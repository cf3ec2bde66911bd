import json
import logging
import time
from typing import Any
from pydantic import ValidationError
from models.experiments import StoredAssignment
from config import config

logger = logging.getLogger(__name__)

# --- Configuration Constants ---
ASSIGNMENT_STORAGE_KEY = "ab_tests"
OFFLINE_EVENTS_KEY = "analytics_offline_events"
ASSIGNMENT_RETENTION_MS = 30 * 24 * 60 * 60 * 1000  # 30 days
ASSIGNMENT_TTL = ASSIGNMENT_RETENTION_MS // 1000
OFFLINE_EVENTS_TTL = 7 * 24 * 60 * 60
MAX_OFFLINE_EVENTS = 1000

# --- Valkey/Redis Backend Implementations ---

class _MemoryBackend:
    """In-process key-value store with the Valkey/Redis call surface. Expiry is not simulated."""
    def __init__(self):
        self._cache = {}

    def get(self, key: str) -> str | None:
        logger.debug("memory store get: %s", key)
        return self._cache.get(key)

    def set(self, key: str, value: str, ex: int | None = None):
        logger.debug("memory store set: %s, value: %s", key, value)
        self._cache[key] = value

    def delete(self, key: str):
        logger.debug("memory store delete: %s", key)
        self._cache.pop(key, None)

class RealValkeyBackend:
    """Real implementation using redis-py client (compatible with Valkey)."""
    def __init__(self, host: str, port: int, db: int = 0, password: str | None = None):
        import redis

        try:
            self.client = redis.Redis(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=True,
                socket_timeout=2.0
            )
            self.client.ping()
        except Exception as e:
            logger.error("Failed to connect to Valkey/Redis: %s", e)
            raise

    # Errors propagate; StorageClient logs them and reports the failed write.
    def get(self, key: str) -> str | None:
        logger.debug("valkey get: %s", key)
        return self.client.get(key)

    def set(self, key: str, value: str, ex: int | None = None):
        logger.debug("valkey set: %s, value: %s", key, value)
        self.client.set(key, value, ex=ex)

    def delete(self, key: str):
        logger.debug("valkey delete: %s", key)
        self.client.delete(key)


def now_ms() -> int:
    return int(time.time() * 1000)


# --- Dedicated Storage Client Class ---

class StorageClient:
    """Persisted assignment records and offline analytics events on top of a key-value backend.

    Every operation is best effort: a failing backend is logged and the
    caller carries on with whatever it holds in memory.
    """

    def __init__(self, backend, namespace: str | None = None):
        self.backend = backend
        self.namespace = namespace
        logger.debug("StorageClient backend: %s namespace: %s", self.backend, self.namespace)

    def _key(self, base: str) -> str:
        return f"{base}:{self.namespace}" if self.namespace else base

    @property
    def assignment_key(self) -> str:
        return self._key(ASSIGNMENT_STORAGE_KEY)

    @property
    def offline_events_key(self) -> str:
        return self._key(OFFLINE_EVENTS_KEY)

    def _read_json(self, key: str) -> Any:
        try:
            json_str = self.backend.get(key)
        except Exception as e:
            logger.warning("storage read failed for key %s, continuing in memory: %s", key, e)
            return None
        if not json_str:
            return None
        try:
            return json.loads(json_str)
        except (TypeError, ValueError) as e:
            logger.warning("discarding unreadable value under key %s: %s", key, e)
            return None

    def _write_json(self, key: str, value: Any, ex: int) -> bool:
        try:
            self.backend.set(key, json.dumps(value), ex=ex)
            return True
        except Exception as e:
            logger.warning("storage write failed for key %s, continuing in memory: %s", key, e)
            return False

    # --- Assignment records ---

    def _read_assignments(self, now: int) -> dict[str, StoredAssignment]:
        raw = self._read_json(self.assignment_key)
        if not isinstance(raw, dict):
            return {}

        records: dict[str, StoredAssignment] = {}
        for test_id, data in raw.items():
            try:
                record = StoredAssignment.model_validate(data)
            except ValidationError:
                logger.warning("ignoring malformed stored assignment for test %s", test_id)
                continue
            if now - record.assigned_at > ASSIGNMENT_RETENTION_MS:
                logger.debug("stored assignment for test %s expired", test_id)
                continue
            records[test_id] = record
        return records

    def load_assignments(self, now: int | None = None) -> dict[str, StoredAssignment]:
        """Non-expired assignment records keyed by test id."""
        return self._read_assignments(now if now is not None else now_ms())

    def get_assignment(self, test_id: str, now: int | None = None) -> StoredAssignment | None:
        return self.load_assignments(now).get(test_id)

    def save_assignment(self, test_id: str, record: StoredAssignment, now: int | None = None) -> bool:
        """Read-modify-write of the assignment map. Expired entries are dropped on the way."""
        records = self._read_assignments(now if now is not None else now_ms())
        records[test_id] = record
        payload = {tid: r.model_dump(by_alias=True) for tid, r in records.items()}
        saved = self._write_json(self.assignment_key, payload, ex=ASSIGNMENT_TTL)
        if saved:
            logger.debug("assignment for test %s persisted under %s", test_id, self.assignment_key)
        return saved

    def remove_assignments(self, test_id: str | None = None) -> None:
        if test_id is None:
            try:
                self.backend.delete(self.assignment_key)
            except Exception as e:
                logger.warning("storage delete failed for key %s: %s", self.assignment_key, e)
            return

        records = self._read_assignments(now_ms())
        if records.pop(test_id, None) is not None:
            payload = {tid: r.model_dump(by_alias=True) for tid, r in records.items()}
            self._write_json(self.assignment_key, payload, ex=ASSIGNMENT_TTL)

    # --- Offline analytics events ---

    def store_offline_events(self, events: list[dict[str, Any]]) -> bool:
        existing = self._read_json(self.offline_events_key)
        all_events = existing if isinstance(existing, list) else []
        all_events.extend(events)
        if len(all_events) > MAX_OFFLINE_EVENTS:
            del all_events[:len(all_events) - MAX_OFFLINE_EVENTS]
        return self._write_json(self.offline_events_key, all_events, ex=OFFLINE_EVENTS_TTL)

    def pop_offline_events(self) -> list[dict[str, Any]]:
        events = self._read_json(self.offline_events_key)
        if not isinstance(events, list) or not events:
            return []
        try:
            self.backend.delete(self.offline_events_key)
        except Exception as e:
            logger.warning("storage delete failed for key %s: %s", self.offline_events_key, e)
        return events

# --- Initialize Backend ---

_DEFAULT_BACKEND = None

def get_default_backend():
    """Valkey when VALKEY_HOST is reachable, otherwise an in-process store. Created on first use."""
    global _DEFAULT_BACKEND
    if _DEFAULT_BACKEND is not None:
        return _DEFAULT_BACKEND

    valkey_host = config.valkey_host
    valkey_port = config.valkey_port
    if valkey_host:
        logger.info("valkey_host: %s, port: %d", valkey_host, valkey_port)
        try:
            _DEFAULT_BACKEND = RealValkeyBackend(host=valkey_host, port=valkey_port)
        except Exception:
            logger.info("Falling back to in-memory backend due to connection failure.")
            _DEFAULT_BACKEND = _MemoryBackend()
    else:
        logger.info("VALKEY_HOST not set. Using in-memory backend.")
        _DEFAULT_BACKEND = _MemoryBackend()
    return _DEFAULT_BACKEND

def get_storage_client(namespace: str | None = None) -> StorageClient:
    return StorageClient(backend=get_default_backend(), namespace=namespace)

def get_memory_storage_client(namespace: str | None = None) -> StorageClient:
    return StorageClient(backend=_MemoryBackend(), namespace=namespace)
