"""Export every stored chat as JSON, CSV or plain text."""
from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Tuple

from imagequery.errors import InvalidOperation, NotFound
from imagequery.messages import ASSISTANT, USER, Message, Session
from imagequery.store import ChatStore, parse_timestamp

logger = logging.getLogger(__name__)

APP_NAME = "ImageQuery"
EXPORT_VERSION = "1.0.0"

FORMATS = {
    "json": "application/json",
    "csv": "text/csv",
    "txt": "text/plain",
}

CSV_HEADER = [
    "Session ID",
    "Session Title",
    "Session Created",
    "Message ID",
    "Role",
    "Content",
    "Image Count",
    "Timestamp",
    "Model",
    "Confidence",
    "Status",
]


@dataclass
class ChatExporter:
    store: ChatStore

    def _sessions(self) -> List[Tuple[Session, List[Message]]]:
        sessions = []
        for session in self.store.list_sessions():
            try:
                sessions.append((session, self.store.load_messages(session.id)))
            except NotFound:
                # deleted between listing and loading
                continue
        return sessions

    def render(self, fmt: str) -> str:
        if fmt == "json":
            return self.to_json()
        if fmt == "csv":
            return self.to_csv()
        if fmt == "txt":
            return self.to_text()
        raise InvalidOperation(f"unknown export format '{fmt}' (expected one of {', '.join(FORMATS)})")

    def write(self, fmt: str, directory: Path) -> Path:
        """Render ``fmt`` into a timestamped file under ``directory``."""
        content = self.render(fmt)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"imagequery_chat_export_{datetime.now().strftime('%Y%m%d-%H%M%S')}.{fmt}"
        path.write_text(content, encoding="utf-8")
        logger.info(f"Exported chats as {fmt} to {path}")
        return path

    def to_json(self) -> str:
        sessions = self._sessions()
        payload: Dict[str, Any] = {
            "export_info": {
                "app_name": APP_NAME,
                "export_date": datetime.now().astimezone().isoformat(),
                "total_sessions": len(sessions),
                "version": EXPORT_VERSION,
            },
            "chat_sessions": [
                {
                    "session_info": session.to_dict(),
                    "messages": [m.to_dict() for m in messages],
                }
                for session, messages in sessions
            ],
        }
        return json.dumps(payload, indent=2)

    def to_csv(self) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for session, messages in self._sessions():
            for message in messages:
                writer.writerow([
                    session.id,
                    session.title,
                    session.created_at,
                    message.id,
                    message.role,
                    message.error if message.failed else message.text,
                    len(message.image_refs),
                    message.created_at,
                    message.model_used or "",
                    "" if message.confidence is None else message.confidence,
                    message.status,
                ])
        return buffer.getvalue()

    def to_text(self) -> str:
        sessions = self._sessions()
        lines = [
            f"{APP_NAME} Chat Export",
            f"Export Date: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"Total Sessions: {len(sessions)}",
            "=" * 50,
            "",
        ]
        for index, (session, messages) in enumerate(sessions, start=1):
            lines.append(f"SESSION {index}: {session.title}")
            lines.append(f"Created: {session.created_at}")
            lines.append(f"Last Updated: {session.last_updated_at}")
            lines.append(f"Messages: {len(messages)}")
            lines.append("-" * 30)
            for number, message in enumerate(messages, start=1):
                lines.append("")
                lines.append(f"[{number}] {message.role.upper()} - {message.created_at}")
                if message.model_used:
                    lines.append(f"Model: {message.model_used}")
                if message.confidence is not None:
                    lines.append(f"Confidence: {message.confidence * 100:.1f}%")
                if message.image_refs:
                    lines.append(f"Images: {len(message.image_refs)}")
                if message.failed:
                    lines.append(f"Error: {message.error}")
                else:
                    lines.append(f"Content: {message.text}")
            lines.extend(["", "=" * 50, ""])
        return "\n".join(lines)

    def statistics(self) -> Dict[str, Any]:
        sessions = self._sessions()
        created = sorted((parse_timestamp(s.created_at), s.created_at) for s, _ in sessions)
        messages = [m for _, batch in sessions for m in batch]
        return {
            "total_sessions": len(sessions),
            "total_messages": len(messages),
            "user_messages": sum(1 for m in messages if m.role == USER),
            "ai_messages": sum(1 for m in messages if m.role == ASSISTANT),
            "failed_messages": sum(1 for m in messages if m.failed),
            "total_images": sum(len(m.image_refs) for m in messages),
            "oldest_session": created[0][1] if created else None,
            "newest_session": created[-1][1] if created else None,
        }
