"""Session and message records."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional
import uuid

USER = "user"
ASSISTANT = "assistant"

FINAL = "final"
FAILED = "failed"


def _now() -> str:
    return datetime.now().astimezone().isoformat(timespec="milliseconds")


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Session:
    id: str
    title: str
    created_at: str
    last_updated_at: str
    message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            created_at=data.get("created_at", ""),
            last_updated_at=data.get("last_updated_at", data.get("created_at", "")),
            message_count=int(data.get("message_count", 0)),
        )


@dataclass
class Message:
    """A single turn half. ``seq`` is assigned by the store on append."""

    id: str
    session_id: str
    role: str
    text: str
    image_refs: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    seq: int = -1
    model_used: Optional[str] = None
    confidence: Optional[float] = None
    status: str = FINAL
    error: Optional[str] = None

    @property
    def is_user(self) -> bool:
        return self.role == USER

    @property
    def failed(self) -> bool:
        return self.status == FAILED

    def copy(self, **changes: Any) -> "Message":
        return replace(self, image_refs=list(self.image_refs), **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        confidence = data.get("confidence")
        return cls(
            id=data["id"],
            session_id=data.get("session_id", ""),
            role=data.get("role", USER),
            text=data.get("text", ""),
            image_refs=list(data.get("image_refs") or []),
            created_at=data.get("created_at", ""),
            seq=int(data.get("seq", -1)),
            model_used=data.get("model_used"),
            confidence=float(confidence) if confidence is not None else None,
            status=data.get("status", FINAL),
            error=data.get("error"),
        )


def user_message(session_id: str, text: str, images: List[str] | None = None) -> Message:
    return Message(id=new_id(), session_id=session_id, role=USER, text=text, image_refs=list(images or []))


def assistant_message(
    session_id: str,
    text: str,
    model_used: str,
    confidence: float,
    message_id: str | None = None,
) -> Message:
    return Message(
        id=message_id or new_id(),
        session_id=session_id,
        role=ASSISTANT,
        text=text,
        model_used=model_used,
        confidence=confidence,
        status=FINAL,
    )


def failed_message(session_id: str, error: str, message_id: str | None = None) -> Message:
    # model_used/confidence stay unset on failures
    return Message(
        id=message_id or new_id(),
        session_id=session_id,
        role=ASSISTANT,
        text="",
        status=FAILED,
        error=error,
    )


def session_title(first_message: str) -> str:
    """First four words of the opening message, capped at 30 characters."""
    words = " ".join(first_message.split()[:4])
    if not words:
        return "New Chat"
    return words[:30] + "..." if len(words) > 30 else words


def default_session_title(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"New Chat {now.day}/{now.month}"


def apply_prompt_template(template: str | None, text: str) -> str:
    if not template or not template.strip():
        return text
    if "{input}" in template:
        return template.replace("{input}", text)
    return f"{template.rstrip()}\n\n{text}"
