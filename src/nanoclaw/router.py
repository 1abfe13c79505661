# start src/nanoclaw/router.py
"""Prompt formatting, trigger matching, and outbound text cleanup."""

from __future__ import annotations

import re
from xml.sax.saxutils import escape

from nanoclaw.types import NewMessage, RegisteredGroup

_ATTR_ENTITIES = {'"': "&quot;"}
_INTERNAL_BLOCK = re.compile(r"<internal>.*?</internal>", re.DOTALL)


def escape_xml(text: str | None) -> str:
    """Escape ``& < > "`` for use in element text or attribute values."""
    return escape(text, _ATTR_ENTITIES) if text else ""


def format_messages(messages: list[NewMessage]) -> str:
    """Render buffered chat messages as the agent prompt.

    Example::

        <messages>
        <message sender="Sam" time="2024-01-01T00:00:00Z">hi @Andy</message>
        </messages>
    """
    body = "\n".join(
        f'<message sender="{escape_xml(m.sender_name)}" time="{escape_xml(m.timestamp)}">'
        f"{escape_xml(m.content)}</message>"
        for m in messages
    )
    return f"<messages>\n{body}\n</messages>"


def has_trigger(messages: list[NewMessage], pattern: re.Pattern[str]) -> bool:
    """True if any message starts with the trigger."""
    return any(pattern.search(m.content.strip()) for m in messages)


def needs_trigger(group: RegisteredGroup) -> bool:
    """Whether a group's messages are ignored until someone mentions the assistant.

    The main group never needs one; other groups do unless they opted out
    with ``requires_trigger=False``.
    """
    return not group.is_main and group.requires_trigger is not False


def strip_internal_tags(text: str) -> str:
    """Drop ``<internal>...</internal>`` regions and surrounding whitespace."""
    return _INTERNAL_BLOCK.sub("", text).strip()


def format_outbound(raw_text: str, prefix: str = "") -> str:
    """Turn agent output into chat text.

    Args:
        raw_text: The agent's result.
        prefix: Prepended when the assistant shares the operator's number
            (e.g. ``"Andy: "``).

    Returns:
        The text to send, or an empty string when nothing is left to say.
    """
    text = strip_internal_tags(raw_text)
    return f"{prefix}{text}" if text else ""


# end src/nanoclaw/router.py
