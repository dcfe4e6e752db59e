"""
Session Storage

Key/value storage for client-held ephemeral state that must survive a
redirect to a payment provider, and the pending-checkout record kept in it.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from student_billing.domain.subscription import PendingCheckout


logger = logging.getLogger(__name__)


class SessionStorage(Protocol):
    """Minimal string key/value store."""

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class InMemorySessionStorage:
    """Process-local storage. Lost when the process exits."""

    def __init__(self):
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class JsonFileSessionStorage:
    """Storage backed by a single JSON file, for resuming after a redirect."""

    def __init__(self, path: str):
        self._path = Path(path)

    def _read(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable session storage {self._path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data), encoding="utf-8")

    def get_item(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set_item(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove_item(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)


class PendingCheckoutStore:
    """Reads and writes the pending-checkout record under a fixed namespace key."""

    def __init__(self, storage: SessionStorage, key: str):
        self._storage = storage
        self._key = key

    def save(self, pending: PendingCheckout) -> None:
        self._storage.set_item(self._key, pending.model_dump_json(by_alias=True))
        logger.info(f"Saved pending checkout {pending.tx_ref} for student {pending.student_id}")

    def load(self) -> Optional[PendingCheckout]:
        raw = self._storage.get_item(self._key)
        if not raw:
            return None
        try:
            return PendingCheckout.model_validate_json(raw)
        except PydanticValidationError as e:
            logger.warning(f"Dropping malformed pending checkout record: {e}")
            self.clear()
            return None

    def clear(self) -> None:
        self._storage.remove_item(self._key)
