from __future__ import annotations

import re
from typing import Callable, List, Tuple, Union

_Replacement = Union[str, Callable[["re.Match[str]"], str]]

# 順序が重要: 具体的なパターンを先に、汎用の長いトークンは最後
_RULES: List[Tuple["re.Pattern[str]", _Replacement]] = [
    (re.compile(r"\b([A-Za-z0-9._%+-]+)@([A-Za-z0-9.-]+)\.[A-Za-z]{2,}\b"), "***@***"),
    (re.compile(r"(?i)\bBearer\s+([A-Za-z0-9._\-]+)\b"), "Bearer ***"),
    (re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}\b"), "sk-***"),
    (re.compile(r"\bAIza[0-9A-Za-z_\-]{20,}\b"), "AIza***"),
    (re.compile(r"\b(rzp_(?:test|live))_[A-Za-z0-9]{6,}\b"), lambda m: f"{m.group(1)}_***"),
    (
        re.compile(r"(?i)(razorpay_signature|signature|api[_-]?key|key[_-]?secret|token|secret)\s*([:=])\s*([\"']?)([^\"'\s,}]{6,})(\3)"),
        lambda m: f"{m.group(1)}{m.group(2)}{m.group(3)}***{m.group(5)}",
    ),
    (re.compile(r"(?i)([?&](?:api[_-]?key|key|token|secret)=)([^&#\s]{4,})"), lambda m: f"{m.group(1)}***"),
    (re.compile(r"\b[0-9a-f]{64}\b"), "***"),
    (re.compile(r"\b([A-Za-z0-9_-]{32,})\b"), "***"),
]


def redact(text: str, *, max_len: int = 500) -> str:
    """Best-effort redaction for log lines.

    Masks emails, bearer tokens, OpenAI/Gemini keys, Razorpay key ids,
    ``key=value`` secrets (including payment signatures), hex digests and
    other long opaque tokens, then trims to ``max_len``.
    """
    if not text:
        return ""
    s = str(text)
    for pattern, replacement in _RULES:
        s = pattern.sub(replacement, s)
    if max_len and len(s) > max_len:
        s = s[: max_len - 3] + "..."
    return s
