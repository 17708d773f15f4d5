from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from cairn.constants import TITLE_MAX_CHARS
from cairn.messages import Message, Role
from cairn.utils import new_id, now_ms

DEFAULT_TITLE = "New Session"


class SessionStatus(StrEnum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SessionBusyError(Exception):
    """A turn is already running on this session."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is busy with another turn")
        self.session_id = session_id


class SessionNotFoundError(Exception):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class Session(BaseModel):
    id: str = Field(default_factory=lambda: new_id("ses_"))
    project_path: str
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    title: str | None = None
    status: SessionStatus = SessionStatus.ACTIVE
    archived_at: int | None = None
    messages: list[Message] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def display_title(self) -> str:
        return self.title or derive_title(self.messages)


class SessionSummary(BaseModel):
    id: str
    title: str
    project_path: str
    created_at: int
    updated_at: int
    message_count: int
    status: SessionStatus
    archived_at: int | None = None


def derive_title(messages: list[Message]) -> str:
    """First line of the first user message, or the default title."""
    for message in messages:
        if message.role != Role.USER:
            continue
        text = message.text.strip()
        if not text:
            continue
        first_line = text.split("\n", 1)[0].strip()
        if len(first_line) > TITLE_MAX_CHARS:
            return first_line[: TITLE_MAX_CHARS - 3] + "..."
        return first_line
    return DEFAULT_TITLE
