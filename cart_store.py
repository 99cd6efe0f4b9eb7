"""
Durable key-value slots for shopping carts.

A cart is written as a whole to one named slot after every mutation and read
back once when the cart is opened. Stored values carry no schema version; a
slot that cannot be read back is treated as an empty cart.
"""
import json
import os
import tempfile
import threading
from typing import Dict, List

import structlog
from pydantic import TypeAdapter, ValidationError

from schemas import CartItem

logger = structlog.get_logger(__name__)

_lines = TypeAdapter(List[CartItem])

# One lock per file; every store instance on the same path shares it.
_path_locks: Dict[str, threading.Lock] = {}
_path_locks_guard = threading.Lock()


def _lock_for(path: str) -> threading.Lock:
    key = os.path.abspath(path)
    with _path_locks_guard:
        return _path_locks.setdefault(key, threading.Lock())


def cart_slot(user_id: str) -> str:
    return f"cart:{user_id}"


class CartStore:
    def load(self, slot: str) -> List[CartItem]:
        raise NotImplementedError

    def save(self, slot: str, items: List[CartItem]) -> None:
        raise NotImplementedError


def _decode(slot: str, raw) -> List[CartItem]:
    if raw is None:
        return []
    try:
        return _lines.validate_python(raw)
    except ValidationError:
        logger.warning("cart_slot_malformed", slot=slot)
        return []


class MemoryCartStore(CartStore):
    def __init__(self):
        self._slots: Dict[str, list] = {}

    def load(self, slot):
        return _decode(slot, self._slots.get(slot))

    def save(self, slot, items):
        self._slots[slot] = _lines.dump_python(items, mode="json")


class JsonFileCartStore(CartStore):
    """All slots in a single JSON object on disk."""

    def __init__(self, path: str):
        self.path = path
        self._lock = _lock_for(path)

    def _read_all(self) -> dict:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            logger.warning("cart_store_unreadable", path=self.path)
            return {}
        if not isinstance(data, dict):
            logger.warning("cart_store_unreadable", path=self.path)
            return {}
        return data

    def load(self, slot):
        with self._lock:
            raw = self._read_all().get(slot)
        return _decode(slot, raw)

    def save(self, slot, items):
        serialized = _lines.dump_python(items, mode="json")
        with self._lock:
            data = self._read_all()
            data[slot] = serialized
            self._write_all(data)

    def _write_all(self, data: dict):
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".carts-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
