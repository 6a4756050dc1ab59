"""
Adapter for OpenAI-compatible /chat/completions endpoints.

Covers OpenAI itself, OpenRouter, DeepSeek, Routeway and any custom or local
server speaking the same protocol. Streaming responses are server-sent
events; reasoning deltas are forwarded wrapped in <think> markers.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import httpx

from personachat.cancellation import CancelToken, check
from personachat.config_loader import CONFIG
from personachat.errors import ApiError, ConnectivityError
from personachat.models import AppSettings, Character, Message
from personachat.prompt_builder import trim_history
from personachat.providers.base import (
    EXTENDED_SAMPLING_PROVIDERS, DraftRequest, build_headers, build_system_prompt,
    chat_completions_url, request_timeout, resolve_base_url, wrap_thought,
)

logger = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data: "
SSE_DONE = "[DONE]"


def build_messages(system_content: str, history: Sequence[Message]) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": system_content}]
    for msg in history:
        role = "assistant" if msg.role == "model" else msg.role
        messages.append({"role": role, "content": msg.content})
    return messages


def build_body(
    settings: AppSettings,
    messages: List[Dict[str, str]],
    stream: bool,
    max_tokens: Optional[int] = None,
    temperature: Optional[float] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "model": settings.model_name,
        "messages": messages,
        "temperature": float(settings.temperature if temperature is None else temperature),
        "max_tokens": int(max_tokens or settings.max_output_tokens),
        "stream": stream,
        "top_p": float(settings.top_p),
    }
    if settings.api_provider in EXTENDED_SAMPLING_PROVIDERS:
        body["repetition_penalty"] = float(settings.repetition_penalty)
        body["top_k"] = int(settings.top_k)
        body["top_a"] = float(settings.top_a)
    return body


def parse_sse_line(line: str) -> Optional[str]:
    """Payload of a `data: ` line, or None for blank lines, comments and other fields."""
    stripped = line.strip()
    if not stripped.startswith(SSE_DATA_PREFIX):
        return None
    return stripped[len(SSE_DATA_PREFIX):].strip()


def decode_openai_delta(payload: str) -> Tuple[str, str]:
    """(content, reasoning) from one streamed chunk. Malformed JSON yields nothing."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug(f"[OPENAI] Skipping malformed stream line: {payload[:80]!r}")
        return "", ""
    choices = (data.get("choices") or []) if isinstance(data, dict) else []
    if not choices:
        return "", ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content") or ""
    reasoning = delta.get("reasoning_content") or delta.get("reasoning") or ""
    return content, reasoning


def connectivity_error(settings: AppSettings, url: str, exc: Exception) -> ConnectivityError:
    if settings.api_provider == "deepseek" or "deepseek" in url:
        message = (
            "DeepSeek Connection Failed: This is likely a network block. "
            "DeepSeek API often requires a server-side proxy or use via OpenRouter."
        )
    else:
        message = (
            "Network Error: Could not connect to API. "
            "This is often caused by CORS restrictions or network blocks."
        )
    logger.error(f"[OPENAI] Connection to {url} failed: {exc}")
    return ConnectivityError(message, provider=settings.api_provider)


class OpenAICompatibleProvider:
    name = "openai_compatible"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=request_timeout())

    async def generate(
        self,
        history: Sequence[Message],
        character: Character,
        settings: AppSettings,
        summary: str = "",
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[str]:
        system_content = build_system_prompt(history, character, settings, summary)
        max_output = settings.max_output_tokens or 1024
        trimmed = trim_history(history, system_content, CONFIG["context"]["safe_context_limit"], max_output)

        body = build_body(settings, build_messages(system_content, trimmed), settings.stream_response)
        async for fragment in self._post(settings, body, cancel):
            yield fragment

    async def generate_draft(
        self,
        request: DraftRequest,
        settings: AppSettings,
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[str]:
        if request.files:
            logger.warning(f"[OPENAI] Ignoring {len(request.files)} attached file(s); only Gemini accepts files")
        messages = [
            {"role": "system", "content": request.system_prompt},
            {"role": "user", "content": request.user_content},
        ]
        body = build_body(
            settings, messages, True,
            max_tokens=request.max_output_tokens, temperature=request.temperature,
        )
        async for fragment in self._post(settings, body, cancel):
            yield fragment

    async def _post(
        self,
        settings: AppSettings,
        body: Dict[str, Any],
        cancel: Optional[CancelToken],
    ) -> AsyncIterator[str]:
        check(cancel)
        url = chat_completions_url(resolve_base_url(settings))
        headers = build_headers(settings)
        logger.info(f"[OPENAI] POST {url} model={body['model']} stream={body['stream']}")

        async with self._client() as client:
            try:
                async with client.stream("POST", url, headers=headers, json=body) as resp:
                    if resp.status_code >= 400:
                        error_text = (await resp.aread()).decode("utf-8", errors="replace")
                        raise ApiError(resp.status_code, error_text)

                    if not body["stream"]:
                        raw = await resp.aread()
                        try:
                            data = json.loads(raw)
                        except json.JSONDecodeError:
                            raise ApiError(resp.status_code, raw.decode("utf-8", errors="replace"))
                        check(cancel)
                        choices = data.get("choices") or []
                        message = (choices[0].get("message") or {}) if choices else {}
                        yield message.get("content") or ""
                        return

                    async for line in resp.aiter_lines():
                        check(cancel)
                        payload = parse_sse_line(line)
                        if payload is None:
                            continue
                        if payload == SSE_DONE:
                            return
                        content, reasoning = decode_openai_delta(payload)
                        if content:
                            yield content
                        if reasoning:
                            yield wrap_thought(reasoning)
            except httpx.TransportError as exc:
                raise connectivity_error(settings, url, exc) from exc
