"""
Thin wrapper around the OpenAI chat completion API with an offline mode.

Behaviour:
1. If USE_OFFLINE_MODEL is set, return a deterministic placeholder without any
   external calls.
2. Otherwise call the OpenAI API with the configured key and model.

Any exception raised by the SDK is converted into :class:`AIServiceError`
(a ``RuntimeError``) carrying the HTTP status when one is known, so callers
have a single error path.
"""

from typing import Any, Dict, List, Optional, Tuple
import hashlib
import json

from openai import APIConnectionError, APIStatusError, OpenAI, OpenAIError

from prontivus.config import get_settings


class AIServiceError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _use_offline() -> bool:
    return get_settings().use_offline_model


def _digest(messages: List[Dict[str, str]]) -> str:
    joined = "\n".join(f"{m.get('role')}:{m.get('content','')}" for m in messages)
    return hashlib.sha1(joined.encode("utf-8")).hexdigest()[:12]


def _estimate_tokens(messages: List[Dict[str, str]]) -> int:
    return max(1, sum(len(m.get("content") or "") for m in messages) // 4)


def _deterministic_placeholder(messages: List[Dict[str, str]]) -> str:
    """Return a deterministic placeholder string based on the message content."""
    return f"Offline response ({_digest(messages)})"


def _deterministic_analysis(messages: List[Dict[str, str]]) -> Dict[str, Any]:
    h = _digest(messages)
    return {
        "anamnesis": f"ANAMNESE\n\nQUEIXA PRINCIPAL:\nOffline response ({h})",
        "cid_codes": [{"code": "Z00.0", "description": "Exame médico geral", "score": 0.5}],
        "exams": [
            {
                "name": "Hemograma completo",
                "type": "Laboratorial",
                "justification": f"Avaliação geral ({h})",
            }
        ],
        "prescriptions": [],
    }


_client: Optional[OpenAI] = None


def _get_client() -> OpenAI:
    global _client
    if _client is None:
        api_key = get_settings().openai_api_key
        if not api_key:
            raise AIServiceError("OpenAI key not configured.")
        _client = OpenAI(api_key=api_key)
    return _client


def reset_client() -> None:
    global _client
    _client = None


def _complete(
    messages: List[Dict[str, str]],
    *,
    model: Optional[str],
    temperature: float,
    max_tokens: Optional[int],
    json_mode: bool,
) -> Tuple[str, int]:
    kwargs: Dict[str, Any] = {
        "model": model or get_settings().openai_model,
        "messages": messages,
        "temperature": temperature,
    }
    if max_tokens:
        kwargs["max_tokens"] = max_tokens
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}
    try:
        response = _get_client().chat.completions.create(**kwargs)
    except APIStatusError as exc:
        raise AIServiceError(f"Error calling OpenAI: {exc}", exc.status_code) from exc
    except APIConnectionError as exc:
        raise AIServiceError(f"Error calling OpenAI: {exc}", 503) from exc
    except OpenAIError as exc:
        raise AIServiceError(f"Error calling OpenAI: {exc}") from exc
    content = response.choices[0].message.content if response.choices else None
    if not content:
        raise AIServiceError("Empty response from OpenAI")
    tokens = response.usage.total_tokens if response.usage is not None else 0
    return content, int(tokens or 0)


def call_openai(
    messages: List[Dict[str, str]],
    model: Optional[str] = None,
    temperature: float = 0,
    max_tokens: Optional[int] = None,
) -> str:
    """Chat completion returning the assistant text."""
    if _use_offline():
        return _deterministic_placeholder(messages)
    content, _ = _complete(
        messages, model=model, temperature=temperature, max_tokens=max_tokens, json_mode=False
    )
    return content


def call_openai_json(
    messages: List[Dict[str, str]],
    model: Optional[str] = None,
    temperature: float = 0,
    max_tokens: Optional[int] = None,
) -> Tuple[Dict[str, Any], int]:
    """Chat completion in JSON mode.

    Returns:
        ``(payload, tokens_used)``; offline mode estimates the token count
        from the prompt length.
    Raises:
        AIServiceError when the call fails or the reply is not a JSON object.
    """
    if _use_offline():
        return _deterministic_analysis(messages), _estimate_tokens(messages)
    content, tokens = _complete(
        messages, model=model, temperature=temperature, max_tokens=max_tokens, json_mode=True
    )
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise AIServiceError("OpenAI returned malformed JSON") from exc
    if not isinstance(payload, dict):
        raise AIServiceError("OpenAI returned malformed JSON")
    return payload, tokens
