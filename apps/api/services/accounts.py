from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict

from apps.api import config

_LOCK = threading.Lock()


class InsufficientCreditsError(RuntimeError):
    """Raised when a non-pro user has no credits left."""


def store_path() -> Path:
    return config.data_dir() / "accounts" / "accounts.json"


def _load() -> Dict[str, Any]:
    path = store_path()
    if not path.exists():
        return {"users": {}}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {"users": {}}
    if not isinstance(data, dict) or not isinstance(data.get("users"), dict):
        return {"users": {}}
    return data


def _save(data: Dict[str, Any]) -> None:
    path = store_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


def _record(data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    rec = data["users"].setdefault(user_id, {})
    rec.setdefault("credits", config.FREE_CREDITS)
    rec.setdefault("hasPro", False)
    return rec


def _require_user(user_id: str) -> None:
    if not user_id:
        raise ValueError("user id is required")


def get_account(user_id: str) -> Dict[str, Any]:
    _require_user(user_id)
    rec = _load()["users"].get(user_id) or {}
    return {
        "userId": user_id,
        "credits": int(rec.get("credits", config.FREE_CREDITS)),
        "hasPro": bool(rec.get("hasPro", False)),
    }


def deduct_credits(user_id: str, amount: int = 1) -> int:
    """Take ``amount`` credits from a user, returning the new balance."""
    _require_user(user_id)
    with _LOCK:
        data = _load()
        rec = _record(data, user_id)
        if int(rec["credits"]) < amount:
            raise InsufficientCreditsError("Insufficient credits")
        rec["credits"] = int(rec["credits"]) - amount
        _save(data)
        return rec["credits"]


def grant_pro(user_id: str) -> Dict[str, Any]:
    """Flag the user as pro. Setting it twice has the same effect as once."""
    _require_user(user_id)
    with _LOCK:
        data = _load()
        rec = _record(data, user_id)
        rec["hasPro"] = True
        _save(data)
    return get_account(user_id)


def charge_generation(user_id: str) -> None:
    """One formula generation costs a credit unless the user has pro access."""
    if get_account(user_id)["hasPro"]:
        return
    deduct_credits(user_id, 1)
