"""
Shared plumbing for the backend adapters: the adapter interface, endpoint
resolution, auth headers and the prompt inputs every adapter builds first.
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Protocol, Sequence

from personachat.cancellation import CancelToken
from personachat.config_loader import CONFIG
from personachat.models import AppSettings, Character, Message
from personachat.prompt_builder import build_system_context
from personachat.world_info import get_lorebook_context

logger = logging.getLogger(__name__)

THOUGHT_OPEN = "<think>"
THOUGHT_CLOSE = "</think>"

# Providers that accept repetition_penalty / top_k / top_a on the chat endpoint
EXTENDED_SAMPLING_PROVIDERS = {"custom", "openrouter", "routeway"}


@dataclass
class DraftRequest:
    """A one-shot generation outside the chat flow (character drafts)."""
    system_prompt: str
    user_content: str
    max_output_tokens: int
    temperature: float
    files: Optional[List[Dict[str, str]]] = None


class Provider(Protocol):
    name: str

    def generate(
        self,
        history: Sequence[Message],
        character: Character,
        settings: AppSettings,
        summary: str = "",
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[str]:
        ...

    def generate_draft(
        self,
        request: DraftRequest,
        settings: AppSettings,
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[str]:
        ...


def wrap_thought(text: str) -> str:
    """Mark reasoning output so the UI can render it apart from the reply."""
    return f"{THOUGHT_OPEN}{text}{THOUGHT_CLOSE}"


def build_system_prompt(
    history: Sequence[Message],
    character: Character,
    settings: AppSettings,
    summary: str = "",
) -> str:
    lorebook_context = get_lorebook_context(history, character, settings)
    return build_system_context(character, settings, lorebook_context, summary)


def resolve_base_url(settings: AppSettings) -> str:
    providers = CONFIG["providers"]
    if settings.api_provider == "openrouter":
        return providers["openrouter_url"]
    if settings.api_provider == "deepseek":
        return providers["deepseek_url"]
    if settings.api_provider == "routeway":
        return providers["routeway_url"]
    return settings.custom_endpoint or providers["openai_url"]


def chat_completions_url(base_url: str) -> str:
    if "/chat/completions" in base_url:
        return base_url
    if base_url.endswith("/"):
        return f"{base_url}chat/completions"
    return f"{base_url}/chat/completions"


def build_headers(settings: AppSettings) -> Dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
    }

    api_key = (settings.api_key or "").strip()
    if settings.api_provider == "horde":
        headers["apikey"] = api_key or CONFIG["job_queue"]["anonymous_api_key"]
        headers["Client-Agent"] = CONFIG["job_queue"]["client_agent"]
    elif api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    if settings.api_provider == "openrouter":
        headers["HTTP-Referer"] = CONFIG["providers"]["default_referer"]
        headers["X-Title"] = CONFIG["providers"]["openrouter_title"]

    return headers


def request_timeout() -> float:
    return float(CONFIG["providers"]["request_timeout"])
