"""Turn bookkeeping derived from tool interactions: step log, projects, progress text."""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Sequence
from typing import Any

from concierge.models.settings import CodeCLIProvider
from concierge.models.tools import ToolInteraction, ToolResult
from concierge.store.conversation import TOOL_LOG_PREFIX

_COMPACT_LENGTH = 90
_SLUG_RE = re.compile(r"[^a-z0-9]+")

_WEB_TOOLS = {"web_search", "deep_research"}
_EMAIL_TOOLS = {"read_emails", "search_emails", "send_email", "reply_email", "forward_email"}
_WORKSPACE_TOOLS = {
    "create_project",
    "list_projects",
    "browse_project",
    "read_project_file",
    "add_project_files",
}

# First match wins.
_SINGLE_TOOL_PROGRESS: list[tuple[str, str]] = [
    ("show_project_deployment_tools", "🧰 Enabling deployment and database tools for this turn..."),
    ("provision_project_database", "🗄️ Provisioning project database..."),
    ("push_project_database_schema", "🧱 Applying project database schema..."),
    ("sync_project_database_env_to_vercel", "🔐 Syncing database environment variables to Vercel..."),
    ("generate_project_mcp_config", "🧩 Generating MCP configuration..."),
]

_EMAIL_PROGRESS: list[tuple[str, str]] = [
    ("search_emails", "🔎 Searching emails..."),
    ("read_emails", "📧 Reading emails..."),
    ("send_email", "📤 Sending email..."),
    ("reply_email", "↩️ Replying to email..."),
    ("forward_email", "📨 Forwarding email..."),
]


def compact(text: str, max_length: int = _COMPACT_LENGTH) -> str:
    """Collapse whitespace and cut to ``max_length`` characters plus ``...``."""
    flattened = " ".join(text.split())
    if len(flattened) <= max_length:
        return flattened
    return flattened[:max_length] + "..."


def _json_object(content: str) -> dict[str, Any] | None:
    try:
        value = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def _int_field(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def summarize_outcome(result: ToolResult | None) -> str:
    """One-phrase outcome for a tool result, as shown in the compact step log."""
    if result is None:
        return "no-result"

    count = len(result.file_attachments)
    suffix = f" (+{count} file{'' if count == 1 else 's'})" if count else ""

    data = _json_object(result.content)
    if data is None:
        fallback = compact(result.content)
        return (fallback or "ok") + suffix

    for key, label in (("error", "error"), ("message", "ok"), ("summary", "ok")):
        value = data.get(key)
        if isinstance(value, str) and value:
            return f"{label} - {compact(value)}{suffix}"

    for key, label in (("downloadedCount", "downloaded"), ("count", "count"), ("eventCount", "events")):
        number = _int_field(data, key)
        if number is not None:
            return f"ok - {label} {number}{suffix}"

    success = data.get("success")
    if isinstance(success, bool):
        return ("ok" if success else "failed") + suffix

    return "ok" + suffix


def build_step_log(interactions: Sequence[ToolInteraction]) -> str | None:
    """
    Compact numbered log of every tool call in the turn.

    Returns ``None`` when no tool was called.
    """
    lines = [TOOL_LOG_PREFIX]
    step = 1
    for interaction in interactions:
        by_call_id = {r.tool_call_id: r for r in interaction.results}
        for call in interaction.assistant_message.tool_calls:
            lines.append(f"{step}. {call.name}: {summarize_outcome(by_call_id.get(call.id))}")
            step += 1
    if step == 1:
        return None
    return "\n".join(lines)


def project_slug(name: str) -> str:
    return _SLUG_RE.sub("-", name.lower()).strip("-")


def accessed_projects(
    interactions: Iterable[ToolInteraction], project_tools: Iterable[str]
) -> list[str]:
    """Sorted ids of projects touched by project tools during the turn."""
    tools = set(project_tools)
    found: set[str] = set()
    for interaction in interactions:
        for call in interaction.assistant_message.tool_calls:
            if call.name not in tools:
                continue
            args = call.parsed_arguments()
            project_id = args.get("project_id")
            project_name = args.get("project_name")
            if isinstance(project_id, str):
                found.add(project_id)
            elif isinstance(project_name, str):
                found.add(project_slug(project_name))
    return sorted(found)


def progress_message(
    tool_names: Iterable[str],
    code_cli: CodeCLIProvider = CodeCLIProvider.CLAUDE,
) -> str:
    """Short status line sent to the chat before a round of tools runs."""
    names = set(tool_names)
    web = bool(names & _WEB_TOOLS)
    deep = "deep_research" in names
    calendar = "manage_calendar" in names
    reminders = "manage_reminders" in names

    if deep and reminders:
        return "🧠🔍 Deep researching and managing reminders..."
    if deep and calendar:
        return "🧠🔍📅 Deep researching and managing calendar..."
    if deep:
        return "🧠🔍 Running deep research..."
    if web and reminders:
        return "🔍 Searching the web and managing reminders..."
    if web and calendar:
        return "🔍📅 Searching the web and managing calendar..."
    if web:
        return "🔍 Searching the web..."

    for name, text in _SINGLE_TOOL_PROGRESS:
        if name in names:
            return text

    if "run_claude_code" in names:
        return f"🤖 Running {code_cli.display_name}..."
    if names & _WORKSPACE_TOOLS:
        return "📁 Managing project workspace..."
    if "send_project_result" in names:
        return "📤 Sending project result..."
    if "deploy_project_to_vercel" in names:
        return "🚀 Deploying project to Vercel..."
    if reminders:
        return "⏰ Managing reminders..."
    if calendar:
        return "📅 Managing calendar..."
    if "manage_contacts" in names:
        return "👥 Managing contacts..."

    for name, text in _EMAIL_PROGRESS:
        if name in names:
            return text
    if "read_document" in names:
        return "📄 Opening document..."
    return "🔧 Processing..."
