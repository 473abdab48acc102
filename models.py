"""Value types shared by the context-window pipeline."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"

    @property
    def storage_label(self) -> str:
        """Label used in the persisted message log."""
        return _STORAGE_LABELS[self]

    @classmethod
    def from_storage_label(cls, label: str) -> "Role":
        for role, stored in _STORAGE_LABELS.items():
            if stored == label:
                return role
        # Rows written by other clients may already use external labels.
        return cls(label)

    @property
    def transcript_label(self) -> str:
        return self.value.title()


_STORAGE_LABELS = {
    Role.USER: "human",
    Role.ASSISTANT: "ai",
    Role.SYSTEM: "system",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_now)

    def to_llm(self) -> dict:
        return {"role": self.role.value, "content": self.content}

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class Session:
    id: str
    user_id: str
    title: str
    summary: str = ""
    created_at: datetime | None = None
    message_count: int = 0

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "message_count": self.message_count,
        }


@dataclass(frozen=True)
class Window:
    """Messages kept verbatim for this turn, plus the ones trimmed away."""

    messages: list[Message]
    overflow: list[Message]


class TurnStage(str, Enum):
    IDLE = "idle"
    SESSION_RESOLVED = "session_resolved"
    HISTORY_LOADED = "history_loaded"
    WINDOW_COMPUTED = "window_computed"
    OVERFLOW_SUMMARIZED = "overflow_summarized"
    PROMPT_ASSEMBLED = "prompt_assembled"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TurnContext:
    """Everything handed to the completion service for one turn.

    Built fresh every turn; ``persisted_summary`` and ``overflow_summary`` are
    kept apart so the post-turn summary merge can fold in the overflow digest
    exactly once.
    """

    session_id: str
    system_preamble: str
    current_input: str
    window: list[Message] = field(default_factory=list)
    persisted_summary: str = ""
    overflow_summary: str = ""
    stage: TurnStage = TurnStage.PROMPT_ASSEMBLED
    user_message_recorded: bool = False

    @property
    def merged_summary(self) -> str:
        return "\n".join(p for p in (self.persisted_summary, self.overflow_summary) if p)

    def to_prompt(self) -> list[dict]:
        prompt = [{"role": "system", "content": self.system_preamble}]
        summary = self.merged_summary
        if summary:
            prompt.append({
                "role": "system",
                "content": f"Condensed summary of the earlier conversation:\n{summary}",
            })
        prompt.extend(m.to_llm() for m in self.window)
        prompt.append({"role": "user", "content": self.current_input})
        return prompt
