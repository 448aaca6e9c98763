"""Observable controller state.

The controller publishes an immutable ``ChatState`` snapshot after every
mutation. Subscribers either register a callback or iterate
``StateStream.updates()``; both receive snapshots in publish order.

Example:
    >>> stream = StateStream()
    >>> unsubscribe = stream.subscribe(lambda state: print(state.is_loading))
    >>> async for state in stream.updates():
    ...     render(state)
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from imagequery.messages import Message, Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatState:
    current_messages: Tuple[Message, ...] = ()
    is_loading: bool = False
    error: Optional[str] = None
    chat_sessions: Tuple[Session, ...] = ()
    current_session: Optional[Session] = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "is_loading": self.is_loading,
            "error": self.error,
            "current_session": self.current_session.to_dict() if self.current_session else None,
            "chat_sessions": [s.to_dict() for s in self.chat_sessions],
            "current_messages": [m.to_dict() for m in self.current_messages],
        }


class StateStream:
    def __init__(self, max_queue: int = 100) -> None:
        self._state = ChatState()
        self._callbacks: List[Callable[[ChatState], None]] = []
        self._queues: List[asyncio.Queue] = []
        self._max_queue = max_queue

    @property
    def current(self) -> ChatState:
        return self._state

    def subscribe(self, callback: Callable[[ChatState], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)
        return _unsubscribe

    def publish(self, state: ChatState) -> None:
        self._state = state
        for callback in list(self._callbacks):
            try:
                callback(state)
            except Exception:
                logger.warning("State subscriber raised", exc_info=True)
        for queue in list(self._queues):
            if queue.full():
                # slow consumer: drop its oldest snapshot, it only needs the latest
                queue.get_nowait()
            queue.put_nowait(state)

    async def updates(self) -> AsyncIterator[ChatState]:
        """Yield the current snapshot, then every later one."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        queue.put_nowait(self._state)
        self._queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)
