"""LLM call boundary shared by every flow.

プロンプトを provider (OpenAI / Gemini) に送り、JSON を取り出して
スキーマ検証するまでをここに閉じ込める。flows 側は検証済みのモデルか
``None`` / ``GenerationError`` だけを見る。
"""

from __future__ import annotations

import json
import logging
from re import DOTALL, search
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from apps.api import config

from .security import redact

try:
    from openai import OpenAI  # type: ignore
except ImportError:  # pragma: no cover
    OpenAI = None  # type: ignore

try:  # pragma: no cover - optional dependency
    import google.generativeai as genai  # type: ignore
except ImportError:  # pragma: no cover
    genai = None  # type: ignore

LOGGER = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n... (data truncated)"

M = TypeVar("M", bound=BaseModel)


class GenerationError(RuntimeError):
    """The provider call failed or produced nothing usable."""


def truncate_text(text: str, max_length: int, marker: str = TRUNCATION_MARKER) -> str:
    """Cap ``text`` at ``max_length`` characters and append ``marker`` when cut."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + marker


def complete_json(
    system: str,
    user: str,
    *,
    temperature: float = 0.2,
    max_output_tokens: int = 1200,
) -> Dict[str, Any]:
    """Send one prompt to the configured provider and return the JSON object it produced."""
    provider = config.get_llm_provider()
    try:
        if provider == "gemini":
            text = _call_gemini(system, user, temperature, max_output_tokens)
        else:
            text = _call_openai(system, user, temperature, max_output_tokens)
    except GenerationError:
        raise
    except config.CredentialsError as exc:
        raise GenerationError(str(exc)) from exc
    except Exception as exc:
        LOGGER.warning("LLM call failed provider=%s err=%s", provider, redact(str(exc)), exc_info=True)
        raise GenerationError("provider call failed") from exc

    if not text:
        raise GenerationError("empty response from LLM")
    return _parse_json(text)


def validate_output(model: Type[M], payload: Any) -> Optional[M]:
    """Defensive policy: return the validated model, or ``None`` when the payload does not fit."""
    if payload is None:
        LOGGER.warning("LLM returned no output for %s", model.__name__)
        return None
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        LOGGER.error("LLM returned a malformed %s: %s", model.__name__, exc.errors())
        return None


def require_output(model: Type[M], payload: Any) -> M:
    """Strict policy for opaque text outputs: a mismatch is a generation failure."""
    result = validate_output(model, payload)
    if result is None:
        raise GenerationError(f"the AI model did not return a valid {model.__name__}")
    return result


def _call_openai(system: str, user: str, temperature: float, max_output_tokens: int) -> Optional[str]:
    api_key = config.get_openai_api_key()
    if OpenAI is None:
        raise GenerationError("OpenAI client library not installed")
    client = OpenAI(api_key=api_key)
    response = client.responses.create(
        model=config.llm_model(),
        input=[
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        temperature=temperature,
        max_output_tokens=max_output_tokens,
    )
    return _extract_text(response)


def _call_gemini(system: str, user: str, temperature: float, max_output_tokens: int) -> Optional[str]:
    api_key = config.get_gemini_api_key()
    if genai is None:
        raise GenerationError("Gemini client library not installed")
    genai.configure(api_key=api_key)
    generation_config = {
        "temperature": temperature,
        "max_output_tokens": max_output_tokens,
        "response_mime_type": "application/json",
    }
    model = genai.GenerativeModel(config.gemini_model(), system_instruction=system)
    response = model.generate_content(user, generation_config=generation_config)
    return _extract_gemini_text(response)


def _parse_json(text: str) -> Dict[str, Any]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        # 前後に説明文が付いた場合は最初の JSON ブロックで再試行
        m = search(r"\{.*\}\s*$", text, DOTALL) or search(r"\{.*\}", text, DOTALL)
        if not m:
            raise GenerationError("invalid JSON from LLM: could not locate JSON object")
        try:
            payload = json.loads(m.group(0))
        except json.JSONDecodeError as exc:
            raise GenerationError(f"invalid JSON from LLM: {exc}") from exc
    if not isinstance(payload, dict):
        raise GenerationError("LLM output is not a JSON object")
    return payload


def _extract_text(response: Any) -> Optional[str]:  # pragma: no cover - depends on SDK version
    text = getattr(response, "output_text", None)
    if isinstance(text, str) and text.strip():
        return text
    for chunk in getattr(response, "output", None) or []:
        for item in getattr(chunk, "content", None) or []:
            if getattr(item, "type", None) == "output_text":
                return item.text
    return None


def _extract_gemini_text(response: Any) -> Optional[str]:  # pragma: no cover - SDK-dependent
    try:
        txt = response.text
    except (AttributeError, ValueError):
        # blocked / empty candidates raise ValueError on .text
        txt = None
    if isinstance(txt, str) and txt.strip():
        return txt
    buf: list[str] = []
    for cand in getattr(response, "candidates", None) or []:
        content = getattr(cand, "content", None)
        for part in getattr(content, "parts", None) or []:
            t = getattr(part, "text", None)
            if isinstance(t, str):
                buf.append(t)
    joined = "\n".join(buf).strip()
    return joined or None
