from enum import StrEnum


class TurnState(StrEnum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    STREAMING_TEXT = "streaming_text"
    EXECUTING_TOOL = "executing_tool"
    FAILED = "failed"
    CANCELLED = "cancelled"


