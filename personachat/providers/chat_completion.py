"""
Chat-completion adapter for the Gemini API (google-genai SDK).

The system context goes in the dedicated system_instruction parameter, not
in the history. All safety categories are set to BLOCK_NONE. When search
grounding returns citations, a numbered Sources section follows the reply.
"""

import base64
import logging
import os
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from personachat.cancellation import CancelToken, check
from personachat.config_loader import CONFIG
from personachat.errors import (
    ApiError, ConnectivityError, GenerationError, ModelNotFoundError,
    PermissionDeniedError, QuotaExceededError,
)
from personachat.models import AppSettings, Character, Message
from personachat.prompt_builder import trim_history
from personachat.providers.base import DraftRequest, build_system_prompt

logger = logging.getLogger(__name__)

SAFETY_CATEGORIES = [
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
    "HARM_CATEGORY_CIVIC_INTEGRITY",
]

QUOTA_PHRASES = ("429", "Quota exceeded", "Resource has been exhausted", "RESOURCE_EXHAUSTED")


def safety_settings() -> List[types.SafetySetting]:
    return [types.SafetySetting(category=c, threshold="BLOCK_NONE") for c in SAFETY_CATEGORIES]


def history_to_contents(history: Sequence[Message]) -> List[types.Content]:
    return [
        types.Content(role="user" if m.role == "user" else "model", parts=[types.Part(text=m.content)])
        for m in history
        if m.role != "system"
    ]


def file_parts(files: Optional[List[Dict[str, str]]]) -> List[types.Part]:
    """Inline parts from [{"mimeType": ..., "data": <base64>}]."""
    parts = []
    for f in files or []:
        mime_type = f.get("mimeType") or f.get("mime_type")
        data = f.get("data")
        if not mime_type or not data:
            continue
        parts.append(types.Part.from_bytes(data=base64.b64decode(data), mime_type=mime_type))
    return parts


def build_config(
    settings: AppSettings,
    system_instruction: str,
    max_output_tokens: Optional[int] = None,
    temperature: Optional[float] = None,
    allow_search: bool = True,
) -> types.GenerateContentConfig:
    providers = CONFIG["providers"]
    config: Dict[str, Any] = {
        "temperature": float(settings.temperature if temperature is None else temperature),
        "max_output_tokens": int(max_output_tokens or settings.max_output_tokens),
        "top_p": float(settings.top_p),
        "top_k": float(settings.top_k),
        "system_instruction": system_instruction,
        "safety_settings": safety_settings(),
    }
    if settings.model_name in providers["gemini_thinking_models"]:
        config["thinking_config"] = types.ThinkingConfig(thinking_budget=providers["gemini_thinking_budget"])
    if allow_search and settings.enable_google_search:
        config["tools"] = [types.Tool(google_search=types.GoogleSearch())]
    return types.GenerateContentConfig(**config)


def decode_response(response: Any) -> Tuple[str, List[Tuple[str, str]]]:
    """Text and (uri, title) grounding pairs from a response or stream chunk."""
    text = getattr(response, "text", None) or ""
    sources = []
    candidates = getattr(response, "candidates", None) or []
    if candidates:
        metadata = getattr(candidates[0], "grounding_metadata", None)
        for chunk in getattr(metadata, "grounding_chunks", None) or []:
            web = getattr(chunk, "web", None)
            uri = getattr(web, "uri", None)
            title = getattr(web, "title", None)
            if uri and title:
                sources.append((uri, title))
    return text, sources


def format_sources(sources: Sequence[Tuple[str, str]]) -> List[str]:
    unique: Dict[str, str] = {}
    for uri, title in sources:
        unique[uri] = title
    if not unique:
        return []
    lines = ["\n\n**Sources:**\n"]
    for index, (uri, title) in enumerate(unique.items(), start=1):
        lines.append(f"{index}. [{title}]({uri})\n")
    return lines


def translate_error(exc: Exception, model: str) -> Optional[GenerationError]:
    """Map SDK and transport failures onto typed errors; None means re-raise as is."""
    fallback = CONFIG["providers"]["gemini_fallback_model"]
    message = str(exc)
    status = getattr(exc, "code", None) if isinstance(exc, genai_errors.APIError) else getattr(exc, "status", None)

    if status == 429 or any(p in message for p in QUOTA_PHRASES):
        return QuotaExceededError(provider="gemini")
    if status == 404 or "404" in message:
        return ModelNotFoundError(
            f"Model '{model}' not found (404). Please try '{fallback}' in settings.",
            model=model, suggested_model=fallback,
        )
    if status == 403 or "403" in message:
        return PermissionDeniedError(
            f"Permission Denied (403). Your API Key does not have access to '{model}'. "
            f"Please switch to a stable model like '{fallback}'.",
            model=model, suggested_model=fallback,
        )
    if isinstance(exc, httpx.TransportError):
        return ConnectivityError(f"Network Error: Could not reach the Gemini API ({exc}).", provider="gemini")
    if isinstance(exc, genai_errors.APIError):
        return ApiError(status or 0, message)
    return None


def _default_client(api_key: str):
    return genai.Client(api_key=api_key)


class ChatCompletionProvider:
    name = "chat_completion"

    def __init__(self, client_factory: Optional[Callable[[str], Any]] = None):
        self._client_factory = client_factory or _default_client

    def _client(self, settings: AppSettings):
        api_key = (settings.api_key or "").strip() or os.environ.get("GEMINI_API_KEY") or os.environ.get("API_KEY")
        if not api_key:
            raise GenerationError("No API Key available for Gemini.")
        return self._client_factory(api_key)

    async def generate(
        self,
        history: Sequence[Message],
        character: Character,
        settings: AppSettings,
        summary: str = "",
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[str]:
        system_prompt = build_system_prompt(history, character, settings, summary)
        trimmed = trim_history(
            history, system_prompt,
            CONFIG["context"]["chat_completion_context_limit"], settings.max_output_tokens,
        )
        contents = history_to_contents(trimmed)
        config = build_config(settings, system_prompt)

        async for fragment in self._run(settings, contents, config, settings.stream_response, cancel):
            yield fragment

    async def generate_draft(
        self,
        request: DraftRequest,
        settings: AppSettings,
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[str]:
        parts = [types.Part(text=request.user_content)] + file_parts(request.files)
        contents = [types.Content(role="user", parts=parts)]
        config = build_config(
            settings, request.system_prompt,
            max_output_tokens=request.max_output_tokens,
            temperature=request.temperature,
            allow_search=False,
        )
        async for fragment in self._run(settings, contents, config, True, cancel):
            yield fragment

    async def _run(
        self,
        settings: AppSettings,
        contents: List[types.Content],
        config: types.GenerateContentConfig,
        stream: bool,
        cancel: Optional[CancelToken],
    ) -> AsyncIterator[str]:
        check(cancel)
        client = self._client(settings)
        model = settings.model_name
        sources: List[Tuple[str, str]] = []

        try:
            if stream:
                response_stream = await client.aio.models.generate_content_stream(
                    model=model, contents=contents, config=config,
                )
                async for chunk in response_stream:
                    check(cancel)
                    text, chunk_sources = decode_response(chunk)
                    sources.extend(chunk_sources)
                    if text:
                        yield text
            else:
                response = await client.aio.models.generate_content(
                    model=model, contents=contents, config=config,
                )
                check(cancel)
                text, sources = decode_response(response)
                yield text
        except GenerationError:
            raise
        except Exception as exc:
            typed = translate_error(exc, model)
            logger.error(f"[GEMINI] API error for model {model}: {exc}")
            if typed is None:
                raise
            raise typed from exc

        for line in format_sources(sources):
            yield line
