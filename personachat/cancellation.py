"""
Cooperative cancellation for generation requests.

A CancelToken is checked at every network await and every yield. One token
covers a whole request, continuations included, so cancelling it stops
whatever attempt is in flight.
"""

import asyncio
import logging
from typing import Dict, Optional

from personachat.errors import GenerationAborted

logger = logging.getLogger(__name__)


class CancelToken:
    def __init__(self):
        self._event = asyncio.Event()
        # Set when a newer generation or a session delete took over; the
        # holder must not persist anything after that.
        self.superseded = False

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationAborted()

    async def sleep(self, seconds: float) -> None:
        """Wait for `seconds`, or raise GenerationAborted as soon as the token fires."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise GenerationAborted()


def check(token: Optional[CancelToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


class GenerationRegistry:
    """At most one live generation per chat session.

    Starting a new generation for a session cancels the previous one.
    """

    def __init__(self):
        self._live: Dict[str, CancelToken] = {}

    def begin(self, session_id: str) -> CancelToken:
        previous = self._live.get(session_id)
        if previous is not None:
            logger.info(f"[CANCEL] Superseding in-flight generation for session {session_id}")
            previous.superseded = True
            previous.cancel()
        token = CancelToken()
        self._live[session_id] = token
        return token

    def finish(self, session_id: str, token: CancelToken) -> None:
        if self._live.get(session_id) is token:
            del self._live[session_id]

    def cancel(self, session_id: str, supersede: bool = False) -> bool:
        """Stop the live generation for a session.

        A plain cancel lets the holder keep its partial output; `supersede`
        tells it to drop it.
        """
        token = self._live.pop(session_id, None)
        if token is None:
            return False
        token.superseded = supersede
        token.cancel()
        return True
