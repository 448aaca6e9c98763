"""Bounded conversation window sent to model adapters."""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from imagequery.messages import ASSISTANT, USER, Message


@dataclass(frozen=True)
class Turn:
    role: str
    text: str
    images: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ConversationContext:
    """History window plus the new user turn.

    Turns keep the image references of their messages while those messages
    are inside the window; ``images`` are the ones attached to the new turn.
    """

    history: Tuple[Turn, ...]
    prompt: str
    images: Tuple[str, ...] = ()

    @property
    def history_images(self) -> Tuple[str, ...]:
        return tuple(path for turn in self.history for path in turn.images)

    @property
    def has_images(self) -> bool:
        return bool(self.images)

    def as_messages(self) -> List[dict]:
        """History plus the new turn as ``{role, text}`` dicts."""
        turns = [{"role": t.role, "text": t.text} for t in self.history]
        turns.append({"role": USER, "text": self.prompt})
        return turns


def answered_pairs(messages: Sequence[Message]) -> List[Message]:
    """Drop failed replies along with the prompts they left unanswered.

    Also drops user messages that were never answered (a turn interrupted by
    a session switch) so the remaining list alternates user/assistant.
    """
    kept: List[Message] = []
    pending_user: Message | None = None
    for message in messages:
        if message.role == USER:
            pending_user = message
            continue
        if message.role != ASSISTANT or message.failed or pending_user is None:
            pending_user = None
            continue
        kept.append(pending_user)
        kept.append(message)
        pending_user = None
    return kept


class ContextWindowBuilder:
    def __init__(self, window_size: int = 20) -> None:
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        self.window_size = window_size

    def window(self, history: Sequence[Message]) -> List[Message]:
        """Last ``window_size`` usable messages, anchored on a user message."""
        usable = answered_pairs(history)
        start = max(0, len(usable) - self.window_size)
        if start < len(usable) and usable[start].role != USER:
            # extend backward by one to keep the pair; drop it if nothing precedes
            start = start - 1 if start > 0 else start + 1
        return usable[start:]

    def build(
        self,
        history: Sequence[Message],
        prompt: str,
        images: Sequence[str] | None = None,
    ) -> ConversationContext:
        window = self.window(history)
        return ConversationContext(
            history=tuple(Turn(m.role, m.text, tuple(m.image_refs)) for m in window),
            prompt=prompt,
            images=tuple(images or ()),
        )
