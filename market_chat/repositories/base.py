import asyncio
import functools
import logging
from typing import Any, Dict, Iterable, List

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import AutoReconnect, ConnectionFailure, NetworkTimeout, ServerSelectionTimeoutError

from market_chat.config import get_settings
from market_chat.exceptions import TransientStoreError

log = logging.getLogger("market_chat.repositories")

TRANSIENT_ERRORS = (AutoReconnect, ConnectionFailure, NetworkTimeout, ServerSelectionTimeoutError)


def to_object_id(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        # Ids that were never ObjectIds (user ids, "system") are stored as-is
        return value


def to_object_ids(values: Iterable[Any]) -> List[Any]:
    return [to_object_id(v) for v in values]


def normalize(doc: Dict[str, Any], *id_fields: str) -> Dict[str, Any]:
    """Stringify ``_id`` and any listed reference fields for the service layer."""
    doc["_id"] = str(doc.get("_id"))
    for field in id_fields:
        if doc.get(field) is not None:
            doc[field] = str(doc[field])
    return doc


def write_op(func):
    """Translate transient driver failures on a write. Never retried."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except TRANSIENT_ERRORS as exc:
            raise TransientStoreError(f"{func.__qualname__} failed: {exc}") from exc
    return wrapper


def read_op(func):
    """Retry an idempotent read on transient driver failures."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        attempts = get_settings().read_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await func(*args, **kwargs)
            except TRANSIENT_ERRORS as exc:
                if attempt == attempts:
                    raise TransientStoreError(f"{func.__qualname__} failed: {exc}") from exc
                log.warning("%s failed (attempt %d/%d): %s", func.__qualname__, attempt, attempts, exc)
                await asyncio.sleep(0.1 * attempt)
    return wrapper
