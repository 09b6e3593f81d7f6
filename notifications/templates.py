"""Template lookup and ``{{key}}`` placeholder rendering."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
import logging
import re
from typing import TYPE_CHECKING, Any, Mapping

from .models import Template

if TYPE_CHECKING:
    from .outbox import NotificationStore

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"{{([^{}]+)}}")


def _stringify(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return str(value)


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    """Substitute ``{{key}}`` placeholders in a single pass.

    Placeholders without a matching variable are left as they are, and
    substituted values are never scanned again, so a value that itself looks
    like a placeholder stays literal.
    """

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        return _stringify(variables[key])

    return PLACEHOLDER_RE.sub(_replace, template)


class TemplateResolver:
    def __init__(self, store: "NotificationStore") -> None:
        self.store = store

    async def resolve(self, name: str) -> Template | None:
        template = await self.store.get_template_by_name(name)
        if template is None:
            logger.info("Template %s not found or inactive", name)
        return template

    def render(self, template: Template, variables: Mapping[str, Any]) -> tuple[str | None, str]:
        subject = render_template(template.subject, variables) if template.subject else None
        return subject, render_template(template.content, variables)


__all__ = ["PLACEHOLDER_RE", "TemplateResolver", "render_template"]
