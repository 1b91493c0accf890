"""Per-user history lists (uploaded files, formula prompts).

Lists are stored most-recent-first and capped; favorites are pinned on top
when listed.
Persistence is injected so the store can run against a JSON directory in
production and a dict in tests.
"""

from __future__ import annotations

import json
import re
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

from apps.api import config

KINDS = ("files", "prompts")

_SAFE_USER = re.compile(r"[^A-Za-z0-9_.-]")


class HistoryBackend(Protocol):
    def load(self, user_id: str, kind: str) -> List[Dict[str, Any]]: ...

    def save(self, user_id: str, kind: str, items: List[Dict[str, Any]]) -> None: ...


class MemoryBackend:
    def __init__(self) -> None:
        self._data: Dict[tuple, List[Dict[str, Any]]] = {}

    def load(self, user_id: str, kind: str) -> List[Dict[str, Any]]:
        return [dict(it) for it in self._data.get((user_id, kind), [])]

    def save(self, user_id: str, kind: str, items: List[Dict[str, Any]]) -> None:
        self._data[(user_id, kind)] = [dict(it) for it in items]


class JsonFileBackend:
    """One JSON file per user: ``{"files": [...], "prompts": [...]}``."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def _path(self, user_id: str) -> Path:
        return self.root / f"{_SAFE_USER.sub('_', user_id)}.json"

    def _read(self, user_id: str) -> Dict[str, Any]:
        path = self._path(user_id)
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    def load(self, user_id: str, kind: str) -> List[Dict[str, Any]]:
        items = self._read(user_id).get(kind)
        return [it for it in items if isinstance(it, dict)] if isinstance(items, list) else []

    def save(self, user_id: str, kind: str, items: List[Dict[str, Any]]) -> None:
        data = self._read(user_id)
        data[kind] = items
        path = self._path(user_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


def order_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Favorites first; each group keeps its existing (recency) order."""
    return sorted(items, key=lambda it: 0 if it.get("isFavorite") else 1)


class HistoryStore:
    def __init__(self, backend: HistoryBackend, cap: int = config.HISTORY_CAP) -> None:
        self.backend = backend
        self.cap = cap
        self._lock = threading.Lock()

    @staticmethod
    def _check_kind(kind: str) -> None:
        if kind not in KINDS:
            raise ValueError(f"unknown history kind: {kind}")

    def list(self, user_id: str, kind: str) -> List[Dict[str, Any]]:
        self._check_kind(kind)
        return order_items(self.backend.load(user_id, kind))

    def add(self, user_id: str, kind: str, content: str) -> Dict[str, Any]:
        """Insert ``content`` at the front; an existing entry with the same content is moved there instead."""
        self._check_kind(kind)
        content = (content or "").strip()
        if not content:
            raise ValueError("content cannot be empty")
        with self._lock:
            items = self.backend.load(user_id, kind)
            existing = next((it for it in items if it.get("content") == content), None)
            rest = [it for it in items if it.get("content") != content]
            if existing is None:
                existing = {
                    "id": uuid4().hex[:12],
                    "content": content,
                    "isFavorite": False,
                    "createdAt": datetime.utcnow().isoformat() + "Z",
                }
            items = self._cap([existing] + rest)
            self.backend.save(user_id, kind, items)
        return existing

    def _cap(self, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        # drop the oldest non-favorites first
        overflow = len(items) - self.cap
        if overflow <= 0:
            return items
        kept = list(items)
        for idx in range(len(kept) - 1, -1, -1):
            if overflow == 0:
                break
            if not kept[idx].get("isFavorite"):
                del kept[idx]
                overflow -= 1
        return kept[: self.cap]

    def set_favorite(
        self, user_id: str, kind: str, item_id: str, favorite: Optional[bool] = None
    ) -> Optional[Dict[str, Any]]:
        """Set the favorite flag; ``favorite=None`` toggles it. Returns ``None`` for an unknown id."""
        self._check_kind(kind)
        with self._lock:
            items = self.backend.load(user_id, kind)
            target = next((it for it in items if it.get("id") == item_id), None)
            if target is None:
                return None
            current = bool(target.get("isFavorite", False))
            target["isFavorite"] = (not current) if favorite is None else bool(favorite)
            self.backend.save(user_id, kind, items)
        return target

    def toggle_favorite(self, user_id: str, kind: str, item_id: str) -> Optional[Dict[str, Any]]:
        return self.set_favorite(user_id, kind, item_id, None)

    def delete(self, user_id: str, kind: str, item_id: str) -> bool:
        self._check_kind(kind)
        with self._lock:
            items = self.backend.load(user_id, kind)
            kept = [it for it in items if it.get("id") != item_id]
            if len(kept) == len(items):
                return False
            self.backend.save(user_id, kind, kept)
        return True

    def clear(self, user_id: str, kind: str) -> None:
        self._check_kind(kind)
        with self._lock:
            self.backend.save(user_id, kind, [])


def default_store() -> HistoryStore:
    return HistoryStore(JsonFileBackend(config.data_dir() / "history"))
