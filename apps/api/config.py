"""Application-level configuration helpers for LLM and payment credentials."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

SUPPORTED_PROVIDERS = {"openai", "gemini"}
_DEFAULT_PROVIDER = os.getenv("FORMULAFLOW_DEFAULT_LLM_PROVIDER", "openai").lower()

# Upload / prompt limits
MAX_UPLOAD_BYTES = 1 * 1024 * 1024
ANALYSIS_MAX_CHARS = 25_000
CHART_MAX_CHARS = 25_000
CHAT_MAX_CHARS = 20_000
CHAT_CONTEXT_MESSAGES = 4
HISTORY_CAP = 50
FREE_CREDITS = 3


class CredentialsError(RuntimeError):
    """Raised when required credentials are missing or invalid."""


_REPO_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_CREDENTIALS_PATH = _REPO_ROOT / "config" / "credentials.json"


def _resolve_credentials_path() -> Path:
    override = os.getenv("FORMULAFLOW_CREDENTIALS_FILE")
    if override:
        return Path(override)
    return _DEFAULT_CREDENTIALS_PATH


def data_dir() -> Path:
    """Root directory for datasets, history lists, accounts and metrics."""
    return Path(os.getenv("FORMULAFLOW_DATA_DIR", "data"))


def llm_model() -> str:
    return os.getenv("FORMULAFLOW_LLM_MODEL", "gpt-4o-mini")


def gemini_model() -> str:
    return os.getenv("FORMULAFLOW_GEMINI_MODEL", "gemini-1.5-flash")


def _load_credentials_raw() -> Dict[str, Any]:
    path = _resolve_credentials_path()
    if not path.exists():
        raise CredentialsError(f"credentials file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:  # pragma: no cover
        raise CredentialsError(f"invalid JSON in credentials file: {exc}") from exc
    if not isinstance(data, dict):
        raise CredentialsError("credentials file must contain a JSON object")
    return data


def _load_credentials_optional() -> Dict[str, Any]:
    try:
        return _load_credentials_raw()
    except CredentialsError:
        return {}


def _write_credentials(data: Dict[str, Any]) -> None:
    path = _resolve_credentials_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    try:  # pragma: no cover - permissions may fail on some OS
        os.chmod(path, 0o600)
    except PermissionError:
        pass
    reset_cache()


def _normalise_llm_section(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        return {}
    section = dict(raw)

    # legacy layout kept the keys at the top level of the section
    for provider in SUPPORTED_PROVIDERS:
        legacy = f"{provider}_api_key"
        if legacy in section and provider not in section:
            section[provider] = {"api_key": section.pop(legacy)}
    return section


def _save_llm_section(section: Dict[str, Any]) -> None:
    data = _load_credentials_optional()
    data["llm"] = section
    _write_credentials(data)


def _is_usable_key(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip()) and not value.strip().startswith("<")


def _provider_has_key(section: Dict[str, Any], provider: str) -> bool:
    node = section.get(provider)
    if isinstance(node, dict):
        return _is_usable_key(node.get("api_key"))
    return False


@lru_cache(maxsize=1)
def get_llm_provider() -> str:
    section = _normalise_llm_section(_load_credentials_optional().get("llm"))
    provider = str(section.get("provider") or "").lower()
    if provider in SUPPORTED_PROVIDERS:
        return provider
    if _provider_has_key(section, "openai"):
        return "openai"
    if _provider_has_key(section, "gemini"):
        return "gemini"
    return _DEFAULT_PROVIDER if _DEFAULT_PROVIDER in SUPPORTED_PROVIDERS else "openai"


def _get_api_key(provider: str) -> str:
    section = _normalise_llm_section(_load_credentials_raw().get("llm"))
    api_key: Optional[str] = None
    node = section.get(provider)
    if isinstance(node, dict):
        api_key = node.get("api_key")
    if not isinstance(api_key, str) or not api_key.strip():
        raise CredentialsError(f"{provider} api key is not configured")
    if api_key.strip().startswith("<"):
        raise CredentialsError(f"{provider} api key still contains placeholder value")
    return api_key.strip()


@lru_cache(maxsize=1)
def get_openai_api_key() -> str:
    return _get_api_key("openai")


@lru_cache(maxsize=1)
def get_gemini_api_key() -> str:
    return _get_api_key("gemini")


@lru_cache(maxsize=1)
def get_payment_secret() -> str:
    """Return the Razorpay key secret used to sign payment callbacks.

    The ``RAZORPAY_KEY_SECRET`` environment variable wins over the
    ``payment.key_secret`` entry of the credentials file.
    """
    env_value = os.getenv("RAZORPAY_KEY_SECRET")
    if _is_usable_key(env_value):
        return env_value.strip()  # type: ignore[union-attr]
    section = _load_credentials_optional().get("payment")
    secret = section.get("key_secret") if isinstance(section, dict) else None
    if not _is_usable_key(secret):
        raise CredentialsError("payment key secret is not configured")
    return secret.strip()


def is_provider_configured(provider: str) -> bool:
    provider = provider.lower()
    if provider not in SUPPORTED_PROVIDERS:
        return False
    section = _normalise_llm_section(_load_credentials_optional().get("llm"))
    return _provider_has_key(section, provider)


def set_llm_credentials(provider: str, api_key: str, make_active: bool = True) -> None:
    provider = provider.lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise CredentialsError(f"unsupported provider: {provider}")
    key = (api_key or "").strip()
    if not key:
        raise CredentialsError("api key cannot be empty")
    if key.startswith("<"):
        raise CredentialsError("api key still contains placeholder value")

    section = _normalise_llm_section(_load_credentials_optional().get("llm"))
    provider_entry = section.get(provider)
    if not isinstance(provider_entry, dict):
        provider_entry = {}
    provider_entry["api_key"] = key
    section[provider] = provider_entry
    if make_active:
        section["provider"] = provider
    _save_llm_section(section)


def set_active_provider(provider: str) -> None:
    provider = provider.lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise CredentialsError(f"unsupported provider: {provider}")
    section = _normalise_llm_section(_load_credentials_optional().get("llm"))
    if not _provider_has_key(section, provider):
        raise CredentialsError(f"{provider} api key is not configured")
    section["provider"] = provider
    _save_llm_section(section)


def reset_cache() -> None:
    get_openai_api_key.cache_clear()
    get_gemini_api_key.cache_clear()
    get_llm_provider.cache_clear()
    get_payment_secret.cache_clear()


__all__ = [
    "CredentialsError",
    "SUPPORTED_PROVIDERS",
    "MAX_UPLOAD_BYTES",
    "ANALYSIS_MAX_CHARS",
    "CHART_MAX_CHARS",
    "CHAT_MAX_CHARS",
    "CHAT_CONTEXT_MESSAGES",
    "HISTORY_CAP",
    "FREE_CREDITS",
    "data_dir",
    "llm_model",
    "gemini_model",
    "get_llm_provider",
    "get_openai_api_key",
    "get_gemini_api_key",
    "get_payment_secret",
    "is_provider_configured",
    "set_llm_credentials",
    "set_active_provider",
    "reset_cache",
]
