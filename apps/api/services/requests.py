"""Generation tokens so a superseded request cannot overwrite a newer result.

Each ``(user_id, flow)`` pair has a monotonically increasing generation.
Starting a request bumps it; a request whose token is no longer current when
the model answers is reported as superseded and its result is dropped.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

_LOCK = threading.Lock()
_CURRENT: Dict[Tuple[str, str], int] = {}


@dataclass(frozen=True)
class RequestToken:
    user_id: str
    flow: str
    generation: int

    def is_current(self) -> bool:
        with _LOCK:
            return _CURRENT.get((self.user_id, self.flow)) == self.generation


def begin(user_id: Optional[str], flow: str) -> Optional[RequestToken]:
    """Start a request; anonymous callers get no token and are never superseded."""
    if not user_id:
        return None
    key = (user_id, flow)
    with _LOCK:
        gen = _CURRENT.get(key, 0) + 1
        _CURRENT[key] = gen
    return RequestToken(user_id, flow, gen)


def cancel(user_id: str, flow: str) -> int:
    """Supersede whatever is in flight for ``(user_id, flow)``; returns the new generation."""
    key = (user_id, flow)
    with _LOCK:
        gen = _CURRENT.get(key, 0) + 1
        _CURRENT[key] = gen
    return gen


def is_superseded(token: Optional[RequestToken]) -> bool:
    return token is not None and not token.is_current()


def reset() -> None:
    with _LOCK:
        _CURRENT.clear()
