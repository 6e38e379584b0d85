from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import httpx

from .errors import (
    ConfigurationError,
    InvalidRequestError,
    MalformedRequestError,
    ProviderError,
    QuotaExceededError,
    TransientUnavailableError,
)
from .models import MODEL, ToolCall, Turn
from .tools import ToolDeclaration

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {503, 529}
TRANSIENT_MARKERS = ("overloaded", "unavailable")
MALFORMED_FINISH_REASONS = {"MALFORMED_FUNCTION_CALL", "MALFORMED_TOOL_CALL"}
TRUNCATED_FINISH_REASONS = {"length", "max_tokens", "MAX_TOKENS"}


@dataclass(frozen=True)
class TextAnswer:
    text: str


@dataclass(frozen=True)
class ToolRequest:
    call: ToolCall
    dropped: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.call.name

    @property
    def arguments(self) -> Dict[str, Any]:
        return self.call.arguments


Outcome = Union[TextAnswer, ToolRequest]


@dataclass(frozen=True)
class GenerationParams:
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    model: Optional[str] = None


# ------------------------------
# Failure classification
# ------------------------------


def classify_failure(status: Optional[int], message: str) -> Exception:
    """Map a backend-reported failure onto the builder's error taxonomy."""
    lowered = (message or "").lower()
    if status in TRANSIENT_STATUS_CODES or any(m in lowered for m in TRANSIENT_MARKERS):
        return TransientUnavailableError(message, status_code=status)
    if status == 429 or "quota" in lowered or "resource_exhausted" in lowered:
        return QuotaExceededError(message, status_code=status)
    if status in (401, 403):
        return ConfigurationError(f"model backend rejected credentials ({status})")
    if status in (400, 422) or "invalid_argument" in lowered:
        return InvalidRequestError(message, status_code=status)
    return ProviderError(message, status_code=status)


def _error_from_body(error: Any) -> Exception:
    if isinstance(error, dict):
        code = error.get("code")
        try:
            status = int(code) if code is not None else None
        except (TypeError, ValueError):
            status = None
        message = str(error.get("message") or code or "model backend error")
        return classify_failure(status, message)
    return classify_failure(None, str(error))


# ------------------------------
# Wire encoding
# ------------------------------


def encode_history(history: Sequence[Turn], system_policy: Optional[str] = None) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    if system_policy:
        messages.append({"role": "system", "content": system_policy})

    pending_id = ""
    for index, turn in enumerate(history):
        if turn.is_tool_call:
            call = turn.tool_call
            pending_id = call.call_id or f"call_{index}"
            messages.append(
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": pending_id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.arguments, ensure_ascii=False),
                            },
                        }
                    ],
                }
            )
        elif turn.is_tool_result:
            call = turn.tool_call
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": (call.call_id if call else "") or pending_id,
                    "name": call.name if call else "",
                    "content": turn.rendered_result(),
                }
            )
        else:
            role = "assistant" if turn.role == MODEL else "user"
            messages.append({"role": role, "content": turn.text or ""})
    return messages


# ------------------------------
# Response decoding
# ------------------------------


def _finish_reason(choice: Dict[str, Any]) -> str:
    return str(choice.get("native_finish_reason") or choice.get("finish_reason") or "")


def extract_text(data: Dict[str, Any]) -> str:
    """Pull the answer text out of a completion response.

    Accepts a direct `text` field, a message whose content is a string or a
    list of parts, and a truncated candidate with no content (returns "").
    """
    if isinstance(data.get("text"), str):
        return data["text"]

    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ProviderError("unexpected response format from model backend")
    choice = choices[0] or {}

    if isinstance(choice.get("text"), str):
        return choice["text"]

    message = choice.get("message")
    if not isinstance(message, dict):
        raise ProviderError("unexpected candidate structure from model backend")

    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts: List[str] = []
        for part in content:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                texts.append(part["text"])
            elif isinstance(part, str):
                texts.append(part)
        return "".join(texts)

    reason = _finish_reason(choice)
    if reason in TRUNCATED_FINISH_REASONS:
        logger.warning("[gateway] response hit the output limit with no text; returning empty answer")
    else:
        logger.warning("[gateway] response carried no text (finish_reason=%r)", reason or None)
    return ""


def _parse_tool_call(raw: Any) -> ToolCall:
    if not isinstance(raw, dict):
        raise MalformedRequestError("tool call is not an object")
    fn = raw.get("function") or {}
    name = fn.get("name") if isinstance(fn, dict) else None
    if not isinstance(name, str) or not name.strip():
        raise MalformedRequestError("tool call is missing a function name")

    args_raw = fn.get("arguments")
    if args_raw is None or args_raw == "":
        arguments: Any = {}
    elif isinstance(args_raw, str):
        try:
            arguments = json.loads(args_raw)
        except json.JSONDecodeError as e:
            raise MalformedRequestError(f"arguments for {name} are not valid JSON: {e}") from e
    else:
        arguments = args_raw
    if not isinstance(arguments, dict):
        raise MalformedRequestError(f"arguments for {name} must be a JSON object")

    call_id = raw.get("id") if isinstance(raw.get("id"), str) and raw.get("id") else f"call_{uuid.uuid4().hex[:12]}"
    return ToolCall(name=name.strip(), arguments=arguments, call_id=call_id)


def decode_outcome(data: Dict[str, Any]) -> Outcome:
    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        choice = choices[0] or {}
        reason = _finish_reason(choice)
        if reason.upper() in MALFORMED_FINISH_REASONS:
            raise MalformedRequestError(f"model produced a malformed tool call ({reason})")

        message = choice.get("message") if isinstance(choice.get("message"), dict) else {}
        tool_calls = message.get("tool_calls") or []
        if tool_calls:
            call = _parse_tool_call(tool_calls[0])
            dropped: Tuple[str, ...] = ()
            if len(tool_calls) > 1:
                dropped = tuple(
                    str(((tc or {}).get("function") or {}).get("name") or "?")
                    for tc in tool_calls[1:]
                )
                logger.warning(
                    "[gateway] model requested %d tool calls; honoring %s, dropping %s",
                    len(tool_calls),
                    call.name,
                    ", ".join(dropped),
                )
            return ToolRequest(call=call, dropped=dropped)

    return TextAnswer(extract_text(data))


# ------------------------------
# Gateway
# ------------------------------


class ModelGateway:
    """OpenRouter chat-completions client for the agent loop."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        model: str = "google/gemini-2.5-flash",
        fallback_model: Optional[str] = None,
        temperature: float = 0.9,
        max_tokens: int = 8000,
        site_url: str = "",
        app_name: str = "sitebuilder",
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.fallback_model = fallback_model or None
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.site_url = site_url
        self.app_name = app_name
        self.timeout = timeout
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self.site_url:
            headers["HTTP-Referer"] = self.site_url
        if self.app_name:
            headers["X-Title"] = self.app_name
        return headers

    async def _send(self, client: httpx.AsyncClient, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        resp = await client.post(url, headers=self._headers(), json=body)
        if resp.status_code >= 400:
            message = resp.text
            try:
                payload = resp.json()
                if isinstance(payload, dict) and payload.get("error"):
                    err = payload["error"]
                    message = str(err.get("message") if isinstance(err, dict) else err)
            except ValueError:
                pass
            raise classify_failure(resp.status_code, message)
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError("model backend returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise ProviderError("model backend returned an unexpected body")
        if data.get("error"):
            raise _error_from_body(data["error"])
        logger.debug("[gateway] response %s", data)
        return data

    async def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise ConfigurationError("OPENROUTER_API_KEY is required")
        if self._client is not None:
            return await self._send(self._client, body)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await self._send(client, body)

    async def _post_with_fallback(self, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self._post(body)
        except TransientUnavailableError:
            fallback = self.fallback_model
            if not fallback or fallback == body.get("model"):
                raise
            logger.info("[gateway] %s overloaded; trying fallback model %s", body.get("model"), fallback)
            return await self._post({**body, "model": fallback})

    def _body(self, messages: List[Dict[str, Any]], params: Optional[GenerationParams]) -> Dict[str, Any]:
        params = params or GenerationParams()
        return {
            "model": params.model or self.model,
            "messages": messages,
            "temperature": self.temperature if params.temperature is None else params.temperature,
            "max_tokens": self.max_tokens if params.max_tokens is None else params.max_tokens,
        }

    async def generate(
        self,
        history: Sequence[Turn],
        system_policy: Optional[str],
        catalog: Iterable[ToolDeclaration],
        params: Optional[GenerationParams] = None,
    ) -> Outcome:
        body = self._body(encode_history(history, system_policy), params)
        tools = [d.to_openai() for d in catalog]
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
            body["parallel_tool_calls"] = False
        logger.debug("[gateway] generate: %d message(s), %d tool(s)", len(body["messages"]), len(tools))
        data = await self._post_with_fallback(body)
        return decode_outcome(data)

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        body = self._body(messages, GenerationParams(temperature=temperature, max_tokens=max_tokens))
        data = await self._post_with_fallback(body)
        return extract_text(data)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
