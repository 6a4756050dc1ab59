from personachat.providers.base import DraftRequest, Provider
from personachat.providers.chat_completion import ChatCompletionProvider
from personachat.providers.job_queue import JobQueueProvider
from personachat.providers.openai_compatible import OpenAICompatibleProvider

__all__ = [
    "ChatCompletionProvider",
    "DraftRequest",
    "JobQueueProvider",
    "OpenAICompatibleProvider",
    "Provider",
]
