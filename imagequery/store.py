"""Persistent JSON store for chat sessions and their messages."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List
import json
import logging
import threading
import time
import uuid
try:
    import fcntl  # type: ignore
except Exception:  # pragma: no cover - non-POSIX environments
    fcntl = None

from imagequery.errors import NotFound, StoreWriteError
from imagequery.messages import Message, Session

logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now().astimezone().isoformat(timespec="milliseconds")


def parse_timestamp(value: str) -> datetime:
    """Aware datetime for a stored ISO timestamp; unparseable values sort first."""
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return datetime.min.replace(tzinfo=timezone.utc)
    # naive values were written in local time
    return parsed if parsed.tzinfo is not None else parsed.astimezone()


@dataclass
class ChatStore:
    """One ``sessions/<id>.json`` file per session holding its metadata and messages.

    Every public write is atomic on its own; callers never get multi-step
    transactions.
    """

    data_dir: Path
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def _sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    def _session_path(self, session_id: str) -> Path:
        return self._sessions_dir() / f"{session_id}.json"

    # Sessions

    def create_session(self, title: str) -> str:
        session_id = time.strftime("%Y%m%d-%H%M%S") + "-" + uuid.uuid4().hex[:6]
        now = _timestamp()
        payload = {
            "session": {
                "id": session_id,
                "title": title,
                "created_at": now,
                "last_updated_at": now,
                "message_count": 0,
            },
            "next_seq": 0,
            "messages": [],
        }
        with self._lock:
            self._write(session_id, payload)
        return session_id

    def get_session(self, session_id: str) -> Session | None:
        data = self._read(session_id)
        if data is None:
            return None
        return Session.from_dict(data["session"])

    def list_sessions(self) -> List[Session]:
        sessions: List[Session] = []
        if not self._sessions_dir().exists():
            return sessions
        for path in self._sessions_dir().glob("*.json"):
            try:
                data = json.loads(path.read_text())
                sessions.append(Session.from_dict(data["session"]))
            except Exception:
                logger.warning(f"Skipping unreadable session file {path}", exc_info=True)
                continue
        sessions.sort(key=lambda s: parse_timestamp(s.last_updated_at), reverse=True)
        return sessions

    def rename_session(self, session_id: str, title: str) -> Session:
        def _update(data: Dict[str, Any]) -> Dict[str, Any]:
            data["session"]["title"] = title
            data["session"]["last_updated_at"] = _timestamp()
            return data
        return Session.from_dict(self._locked_update(session_id, _update)["session"])

    def delete_session(self, session_id: str) -> None:
        path = self._session_path(session_id)
        with self._lock:
            if not path.exists():
                raise NotFound(f"session {session_id} not found")
            try:
                path.unlink()
            except OSError as exc:
                raise StoreWriteError(f"failed to delete session {session_id}: {exc}") from exc

    # Messages

    def load_messages(self, session_id: str) -> List[Message]:
        data = self._read(session_id)
        if data is None:
            raise NotFound(f"session {session_id} not found")
        messages = [Message.from_dict(item) for item in data.get("messages", [])]
        messages.sort(key=lambda m: m.seq)
        return messages

    def append_message(self, session_id: str, message: Message) -> str:
        def _update(data: Dict[str, Any]) -> Dict[str, Any]:
            if any(item["id"] == message.id for item in data["messages"]):
                raise StoreWriteError(f"message {message.id} already stored")
            seq = int(data.get("next_seq", len(data["messages"])))
            message.seq = seq
            message.session_id = session_id
            data["messages"].append(message.to_dict())
            data["next_seq"] = seq + 1
            return self._touch(data)
        self._locked_update(session_id, _update)
        return message.id

    def replace_message(self, message_id: str, message: Message) -> None:
        """Overwrite a stored message, keeping its position."""
        def _update(data: Dict[str, Any]) -> Dict[str, Any]:
            for index, item in enumerate(data["messages"]):
                if item["id"] == message_id:
                    message.id = message_id
                    message.seq = int(item.get("seq", index))
                    message.session_id = item.get("session_id", message.session_id)
                    data["messages"][index] = message.to_dict()
                    return self._touch(data)
            raise NotFound(f"message {message_id} not found")
        self._locked_update(message.session_id, _update)

    def truncate_after(self, session_id: str, message_id: str) -> int:
        """Delete ``message_id`` and every later message. Returns the number removed."""
        removed = 0

        def _update(data: Dict[str, Any]) -> Dict[str, Any]:
            nonlocal removed
            ordered = sorted(data["messages"], key=lambda item: item.get("seq", 0))
            for index, item in enumerate(ordered):
                if item["id"] == message_id:
                    removed = len(ordered) - index
                    data["messages"] = ordered[:index]
                    return self._touch(data)
            raise NotFound(f"message {message_id} not found")
        self._locked_update(session_id, _update)
        return removed

    def search_messages(self, query: str, limit: int = 100) -> List[Message]:
        needle = query.lower().strip()
        if not needle:
            return []
        hits: List[Message] = []
        for session in self.list_sessions():
            try:
                messages = self.load_messages(session.id)
            except NotFound:
                continue
            hits.extend(m for m in messages if needle in m.text.lower())
        hits.sort(key=lambda m: (parse_timestamp(m.created_at), m.seq), reverse=True)
        return hits[:limit]

    # Internals

    def _touch(self, data: Dict[str, Any]) -> Dict[str, Any]:
        data["session"]["message_count"] = len(data["messages"])
        data["session"]["last_updated_at"] = _timestamp()
        return data

    def _read(self, session_id: str) -> Dict[str, Any] | None:
        path = self._session_path(session_id)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except Exception:
            logger.warning(f"Failed to read session {session_id}", exc_info=True)
            return None

    def _write(self, session_id: str, payload: Dict[str, Any]) -> None:
        try:
            self._sessions_dir().mkdir(parents=True, exist_ok=True)
            self._session_path(session_id).write_text(json.dumps(payload, indent=2))
        except OSError as exc:
            raise StoreWriteError(f"failed to write session {session_id}: {exc}") from exc

    def _locked_update(
        self,
        session_id: str,
        updater: Callable[[Dict[str, Any]], Dict[str, Any]],
    ) -> Dict[str, Any]:
        path = self._session_path(session_id)
        with self._lock:
            if not path.exists():
                raise NotFound(f"session {session_id} not found")
            if fcntl is None:
                data = self._read(session_id)
                if data is None:
                    raise NotFound(f"session {session_id} not readable")
                updated = updater(data)
                self._write(session_id, updated)
                return updated
            try:
                with path.open("r+", encoding="utf-8") as handle:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                    try:
                        handle.seek(0)
                        raw = handle.read()
                        if not raw.strip():
                            raise NotFound(f"session {session_id} is empty")
                        updated = updater(json.loads(raw))
                        handle.seek(0)
                        handle.truncate()
                        handle.write(json.dumps(updated, indent=2))
                        return updated
                    finally:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            except OSError as exc:
                raise StoreWriteError(f"failed to update session {session_id}: {exc}") from exc
