"""
Token substitution for outbound text and attachments.

Templates are mustache, rendered with chevron against a context dict:
{{dot.path}} is HTML-escaped, {{{dot.path}}} and {{&dot.path}} are not,
and {{#a}}…{{/a}} / {{^a}}…{{/a}} sections work as usual. Tag names may
contain any character but braces, so question-text capture keys render
(`{{responses.What is your name?}}`). Missing values render as an empty
string. A malformed template is a render error; callers fall back to the
raw text.
"""
from __future__ import annotations

import json
from typing import Any, Optional, Union

import chevron
import structlog

from core.errors import ScriptBotError

logger = structlog.get_logger()


class TemplateError(ScriptBotError):
    pass


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def render(template: str, context: dict[str, Any]) -> str:
    try:
        return chevron.render(template, context)
    except chevron.ChevronError as e:
        raise TemplateError(f"{e}: {template!r}") from e


def safe_render(template: Optional[str], context: dict[str, Any]) -> str:
    """Render, or log and return the raw template on failure."""
    if template is None:
        return ""
    template = str(template)
    try:
        return render(template, context)
    except Exception as e:
        logger.error("template_render_failed", template=template, error=str(e))
        return template


def render_attachments(value: Any, context: dict[str, Any]) -> Any:
    """Render every string inside a nested attachment structure."""
    if isinstance(value, str):
        return safe_render(value, context)
    if isinstance(value, dict):
        return {k: render_attachments(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render_attachments(v, context) for v in value]
    return value


# ──────────────────────────────────────────────────────────────
#  Answer aggregation
# ──────────────────────────────────────────────────────────────

def _text_of(message: Any) -> str:
    if isinstance(message, dict):
        return stringify(message.get("text"))
    return stringify(getattr(message, "text", ""))


def _user_of(message: Any) -> str:
    if isinstance(message, dict):
        return message.get("user", "") or ""
    return getattr(message, "user", "") or ""


def combine_messages(messages: Union[Any, list[Any], None]) -> str:
    """
    Collapse one or many captured messages into a display string.

    Several authors → `<@user>:` header per author run, runs separated by
    a blank line. One author → bare lines.
    """
    if not messages:
        return ""
    if not isinstance(messages, list):
        return _text_of(messages)
    if len(messages) == 1:
        return _text_of(messages[0])

    users = {_user_of(m) for m in messages}
    if len(users) > 1:
        lines: list[str] = []
        last_user = None
        for m in messages:
            user = _user_of(m)
            if user != last_user:
                if lines:
                    lines.append("")
                lines.append(f"<@{user}>:")
                last_user = user
            lines.append(_text_of(m))
        return "\n".join(lines)

    return "\n".join(_text_of(m) for m in messages)
