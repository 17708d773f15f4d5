from cairn.session.compaction import (
    CompactionResult,
    Compactor,
    compaction_stats,
    estimate_tokens,
    provider_summarizer,
)
from cairn.session.export import SessionImportError, export_json, parse_export, render_markdown
from cairn.session.models import (
    Session,
    SessionBusyError,
    SessionNotFoundError,
    SessionStatus,
    SessionSummary,
)
from cairn.session.processor import SessionProcessor
from cairn.session.state import TurnState
from cairn.session.store import SessionStore

__all__ = [
    "CompactionResult",
    "Compactor",
    "Session",
    "SessionBusyError",
    "SessionImportError",
    "SessionNotFoundError",
    "SessionProcessor",
    "SessionStatus",
    "SessionStore",
    "SessionSummary",
    "TurnState",
    "compaction_stats",
    "estimate_tokens",
    "export_json",
    "parse_export",
    "provider_summarizer",
    "render_markdown",
]
