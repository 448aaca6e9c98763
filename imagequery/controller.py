"""Conversation controller: owns the active session and runs turns against the dispatch engine."""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from imagequery.audit import AuditLog
from imagequery.config import Config
from imagequery.context import ContextWindowBuilder
from imagequery.dispatch import DispatchEngine
from imagequery.errors import (
    ControllerBusy,
    DispatchFailure,
    InvalidOperation,
    NotFound,
    StoreFailure,
)
from imagequery.export import ChatExporter
from imagequery.messages import (
    ASSISTANT,
    Message,
    Session,
    apply_prompt_template,
    assistant_message,
    default_session_title,
    failed_message,
    session_title,
    user_message,
)
from imagequery.models.registry import AUTO, ModelRegistry
from imagequery.state import ChatState, StateStream
from imagequery.store import ChatStore

logger = logging.getLogger(__name__)

# queued store operation: ("append" | "replace" | "truncate", message)
PendingWrite = Tuple[str, Message]


class ConversationController:
    """Idle -> Sending -> Idle (with an error banner when the turn failed).

    All state lives on the event loop that calls these coroutines. One turn
    may be in flight per session; leaving or deleting a session cancels its
    turn, and a cancelled turn never appends anything.
    """

    def __init__(
        self,
        store: ChatStore,
        engine: DispatchEngine,
        context_builder: ContextWindowBuilder | None = None,
        audit: AuditLog | None = None,
        model: str = AUTO,
    ) -> None:
        self.store = store
        self.engine = engine
        self.context_builder = context_builder or ContextWindowBuilder()
        self.audit = audit
        self.model = model
        self.stream = StateStream()
        self._sessions: List[Session] = []
        self._current: Optional[Session] = None
        self._messages: List[Message] = []
        self._error: Optional[str] = None
        self._inflight: Dict[str, asyncio.Task] = {}
        self._pending_writes: Dict[str, List[PendingWrite]] = {}
        self._version = 0

    @classmethod
    def from_config(cls, config: Config, registry: ModelRegistry | None = None) -> "ConversationController":
        registry = registry or ModelRegistry.from_config(config)
        return cls(
            store=ChatStore(config.data_dir),
            engine=DispatchEngine.from_config(config, registry),
            context_builder=ContextWindowBuilder(config.window_size),
            audit=AuditLog(config.data_dir / "audit.jsonl"),
            model=config.default_model,
        )

    # Observable state

    @property
    def chat_sessions(self) -> List[Session]:
        return list(self._sessions)

    @property
    def current_session(self) -> Optional[Session]:
        return self._current

    @property
    def current_messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def is_loading(self) -> bool:
        return self._current is not None and self.is_busy(self._current.id)

    @property
    def state(self) -> ChatState:
        return self.stream.current

    def is_busy(self, session_id: str) -> bool:
        task = self._inflight.get(session_id)
        return task is not None and not task.done()

    def _publish(self) -> None:
        self._version += 1
        self.stream.publish(ChatState(
            current_messages=tuple(m.copy() for m in self._messages),
            is_loading=self.is_loading,
            error=self._error,
            chat_sessions=tuple(self._sessions),
            current_session=self._current,
            version=self._version,
        ))

    def clear_error(self) -> None:
        self._error = None
        self._publish()

    def set_model(self, selection: str) -> None:
        if selection != AUTO and self.engine.registry.get(selection) is None:
            raise InvalidOperation(f"unknown model '{selection}'")
        self.model = selection
        self._publish()

    # Sessions

    async def initialize(self) -> None:
        self._refresh_sessions()
        self._publish()

    def _refresh_sessions(self) -> None:
        try:
            self._sessions = self.store.list_sessions()
        except StoreFailure as exc:
            self._error = f"Failed to load chat sessions: {exc}"
            return
        if self._current is not None:
            self._current = next((s for s in self._sessions if s.id == self._current.id), self._current)

    async def create_new_chat_session(self, title: str | None = None) -> Session:
        session_id = self.store.create_session(title or default_session_title())
        self._refresh_sessions()
        return await self.switch_to_chat_session(session_id)

    async def switch_to_chat_session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFound(f"session {session_id} not found")
        previous = self._current
        if previous is not None and previous.id != session_id:
            await self._cancel_turn(previous.id)
        messages = self._with_pending(session_id, self.store.load_messages(session_id))
        self._current = session
        self._messages = messages
        self._refresh_sessions()
        self._publish()
        return self._current

    async def delete_chat_session(self, session_id: str) -> None:
        await self._cancel_turn(session_id)
        self._pending_writes.pop(session_id, None)
        try:
            self.store.delete_session(session_id)
        except NotFound:
            raise
        except StoreFailure as exc:
            self._error = f"Failed to delete chat session: {exc}"
            self._publish()
            raise
        if self.audit:
            self.audit.log("session.deleted", session_id)
        if self._current is not None and self._current.id == session_id:
            self._current = None
            self._messages = []
        self._refresh_sessions()
        self._publish()

    async def clear_all_chat_sessions(self) -> None:
        for session in list(self._sessions):
            await self.delete_chat_session(session.id)

    async def rename_chat_session(self, session_id: str, title: str) -> Session:
        title = title.strip()
        if not title:
            raise InvalidOperation("title must not be empty")
        session = self.store.rename_session(session_id, title)
        if self._current is not None and self._current.id == session_id:
            self._current = session
        self._refresh_sessions()
        self._publish()
        return session

    def search_messages(self, query: str, limit: int = 100) -> List[Message]:
        try:
            return self.store.search_messages(query, limit=limit)
        except StoreFailure as exc:
            self._error = f"Failed to search messages: {exc}"
            self._publish()
            return []

    def export_chat_data(self, fmt: str = "json") -> str:
        """All sessions rendered as ``json``, ``csv`` or ``txt``."""
        for session_id in list(self._pending_writes):
            try:
                self._flush(session_id)
            except NotFound as exc:
                logger.warning(f"Dropping writes for missing session {session_id}: {exc}")
                self._pending_writes.pop(session_id, None)
            except StoreFailure as exc:
                logger.warning(f"Exporting without unsaved writes of session {session_id}: {exc}")
        return ChatExporter(self.store).render(fmt)

    def export_statistics(self) -> Dict[str, object]:
        return ChatExporter(self.store).statistics()

    async def close(self) -> None:
        """Cancel every outstanding turn (app shutdown)."""
        for session_id in list(self._inflight):
            await self._cancel_turn(session_id)

    # Turns

    async def send_message(
        self,
        text: str,
        images: Sequence[str] | None = None,
        prompt_template: str | None = None,
        model: str | None = None,
    ) -> Optional[Message]:
        """Run one turn. Returns the assistant message, or None if the turn was abandoned."""
        if not text.strip() and not images:
            raise InvalidOperation("message is empty")
        if self._current is None:
            await self.create_new_chat_session()
        session = self._current
        self._ensure_idle(session.id)

        content = apply_prompt_template(prompt_template, text.strip())
        history = list(self._messages)
        first_turn = not any(m.is_user for m in history)
        prompt = user_message(session.id, content, list(images or []))
        self._error = None
        self._write(session.id, "append", prompt)
        if first_turn:
            self._auto_title(session.id, text)
        return await self._start_turn(session.id, history, prompt, model=model, rollback=prompt)

    async def retry_last_message(self, model: str | None = None) -> Optional[Message]:
        session = self._require_session()
        self._ensure_idle(session.id)
        if len(self._messages) < 2:
            raise InvalidOperation("nothing to retry")
        last = self._messages[-1]
        prompt = self._messages[-2]
        if last.role != ASSISTANT or not last.failed or not prompt.is_user:
            raise InvalidOperation("the last message is not a failed response")
        self._error = None
        return await self._start_turn(session.id, self._messages[:-2], prompt, model=model, replace=last)

    async def edit_message(self, message_id: str, new_text: str, model: str | None = None) -> Optional[Message]:
        session = self._require_session()
        self._ensure_idle(session.id)
        index = next((i for i, m in enumerate(self._messages) if m.id == message_id), None)
        if index is None:
            raise NotFound(f"message {message_id} not found")
        original = self._messages[index]
        if not original.is_user:
            raise InvalidOperation("only user messages can be edited")
        if not new_text.strip():
            raise InvalidOperation("message is empty")

        self._error = None
        if index + 1 < len(self._messages):
            self._write(session.id, "truncate", self._messages[index + 1])
        edited = original.copy(text=new_text.strip())
        self._write(session.id, "replace", edited)
        return await self._start_turn(session.id, self._messages[:index], edited, model=model, rollback=edited)

    def _require_session(self) -> Session:
        if self._current is None:
            raise InvalidOperation("no active chat session")
        return self._current

    def _ensure_idle(self, session_id: str) -> None:
        if self.is_busy(session_id):
            raise ControllerBusy(f"a message is already being sent in session {session_id}")

    async def _start_turn(
        self,
        session_id: str,
        history: List[Message],
        prompt: Message,
        model: str | None = None,
        replace: Message | None = None,
        rollback: Message | None = None,
    ) -> Optional[Message]:
        task = asyncio.ensure_future(self._run_turn(session_id, history, prompt, model, replace, rollback))
        self._inflight[session_id] = task
        self._publish()
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            logger.info(f"Turn in session {session_id} abandoned")
            return None
        finally:
            if self._inflight.get(session_id) is task:
                del self._inflight[session_id]
            self._publish()

    async def _run_turn(
        self,
        session_id: str,
        history: List[Message],
        prompt: Message,
        model: str | None,
        replace: Message | None,
        rollback: Message | None,
    ) -> Message:
        context = self.context_builder.build(history, prompt.text, prompt.image_refs)
        reply_id = replace.id if replace is not None else None
        try:
            outcome = await self.engine.dispatch(context, model or self.model)
        except DispatchFailure as exc:
            reply = failed_message(session_id, str(exc), message_id=reply_id)
            self._error = str(exc)
            audit = {"ok": False, "error": str(exc)}
        except asyncio.CancelledError:
            if rollback is not None:
                self._rollback(session_id, rollback)
            raise
        else:
            best = outcome.best
            reply = assistant_message(session_id, best.text, best.model_id, best.confidence, message_id=reply_id)
            audit = {"ok": True, **outcome.to_dict()}

        # no awaits below: the commit cannot be interrupted by a session switch
        if replace is not None:
            reply.seq = replace.seq
            reply.created_at = replace.created_at
            self._write(session_id, "replace", reply)
        else:
            self._write(session_id, "append", reply)
        if self.audit:
            self.audit.log("turn.retry" if replace is not None else "turn", session_id, audit)
        return reply

    def _auto_title(self, session_id: str, text: str) -> None:
        try:
            session = self.store.rename_session(session_id, session_title(text))
        except StoreFailure as exc:
            logger.warning(f"Failed to title session {session_id}: {exc}")
            return
        if self._current is not None and self._current.id == session_id:
            self._current = session
        self._refresh_sessions()

    # Store writes

    def _write(self, session_id: str, op: str, message: Message) -> None:
        """Apply ``op`` in memory, then persist it; failed writes are queued and replayed."""
        if self._current is not None and self._current.id == session_id:
            self._messages = self._apply(op, message, self._messages)
        queue = self._pending_writes.setdefault(session_id, [])
        queue.append((op, message))
        try:
            self._flush(session_id)
        except NotFound as exc:
            logger.warning(f"Dropping writes for missing session {session_id}: {exc}")
            self._pending_writes.pop(session_id, None)
            self._error = f"Failed to save message: {exc}"
        except StoreFailure as exc:
            logger.warning(f"Store write failed for session {session_id}, {len(queue)} write(s) pending: {exc}")
            self._error = f"Failed to save message: {exc}"
        self._refresh_sessions()
        self._publish()

    def _flush(self, session_id: str) -> None:
        queue = self._pending_writes.get(session_id, [])
        while queue:
            op, message = queue[0]
            if op == "append":
                self.store.append_message(session_id, message)
            elif op == "replace":
                self.store.replace_message(message.id, message)
            elif op == "truncate":
                self.store.truncate_after(session_id, message.id)
            queue.pop(0)
        self._pending_writes.pop(session_id, None)

    def _rollback(self, session_id: str, prompt: Message) -> None:
        """Drop the unanswered prompt of an abandoned turn so the session still ends on a reply."""
        logger.info(f"Rolling back unanswered prompt {prompt.id} in session {session_id}")
        # queued behind any pending writes, so an unsaved append is undone in order
        self._write(session_id, "truncate", prompt)

    def _with_pending(self, session_id: str, messages: List[Message]) -> List[Message]:
        for op, message in self._pending_writes.get(session_id, []):
            messages = self._apply(op, message, messages)
        return messages

    @staticmethod
    def _apply(op: str, message: Message, messages: List[Message]) -> List[Message]:
        if op == "append":
            return messages + [message]
        ids = [m.id for m in messages]
        if message.id not in ids:
            return messages
        index = ids.index(message.id)
        if op == "replace":
            return messages[:index] + [message] + messages[index + 1:]
        if op == "truncate":
            return messages[:index]
        return messages

    async def _cancel_turn(self, session_id: str) -> None:
        task = self._inflight.get(session_id)
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
