"""Portable session documents: versioned JSON for import, markdown for reading."""

import json
from datetime import datetime

from pydantic import BaseModel, Field, ValidationError

from cairn.constants import EXPORT_RESULT_LIMIT
from cairn.messages import ErrorContent, Role, TextContent, ToolResultContent, ToolUseContent
from cairn.session.models import Session
from cairn.utils import now_ms

EXPORT_VERSION = "1.0"

ROLE_HEADINGS = {
    Role.USER: "User",
    Role.ASSISTANT: "Assistant",
    Role.SYSTEM: "System",
}


class SessionImportError(ValueError):
    pass


class ExportedSession(BaseModel):
    version: str = EXPORT_VERSION
    exported_at: int = Field(default_factory=now_ms)
    session: Session


def strip_metadata(session: Session) -> Session:
    return session.model_copy(
        update={
            "metadata": {},
            "messages": [message.model_copy(update={"metadata": {}}) for message in session.messages],
        }
    )


def export_json(session: Session, include_metadata: bool = True) -> str:
    if not include_metadata:
        session = strip_metadata(session)
    return ExportedSession(session=session).model_dump_json(indent=2)


def parse_export(data: str) -> Session:
    """Validate an exported document and return the session it carries."""
    try:
        raw = json.loads(data)
    except json.JSONDecodeError as e:
        raise SessionImportError("Invalid JSON format") from e
    if not isinstance(raw, dict):
        raise SessionImportError("Invalid export: expected a JSON object")

    version = raw.get("version")
    if version != EXPORT_VERSION:
        raise SessionImportError(f"Unsupported export version: {version}")

    try:
        return ExportedSession.model_validate(raw).session
    except ValidationError as e:
        raise SessionImportError(f"Invalid export: {e.error_count()} validation errors") from e


def _format_time(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def render_markdown(session: Session, include_tool_results: bool = False) -> str:
    parts = [
        f"# {session.display_title}",
        "",
        f"**Session:** {session.id}",
        f"**Project:** {session.project_path}",
        f"**Created:** {_format_time(session.created_at)}",
        f"**Updated:** {_format_time(session.updated_at)}",
        "",
        "---",
        "",
    ]

    for message in session.messages:
        body: list[str] = []
        for block in message.content:
            match block:
                case TextContent(text=text) if text:
                    body.append(text)
                case ToolUseContent(name=name, input=tool_input):
                    body += [f"**Tool call:** `{name}`", "```json", json.dumps(tool_input, indent=2), "```"]
                case ToolResultContent(output=output) if include_tool_results:
                    shown = output[:EXPORT_RESULT_LIMIT]
                    if len(output) > EXPORT_RESULT_LIMIT:
                        shown += "\n...(truncated)"
                    body += ["**Tool result:**", "```", shown, "```"]
                case ErrorContent(message=error):
                    body.append(f"**Error:** {error}")
        if not body:
            continue
        parts += [f"## {ROLE_HEADINGS[message.role]}", "", *body, "", "---", ""]

    return "\n".join(parts)
