# start src/nanoclaw/channels/base.py
"""Messaging adapter interface.

The orchestrator only talks to chats through a Channel. Concrete adapters
(WhatsApp, Slack) live outside this package; ``NoOpChannel`` in
``nanoclaw.main`` stands in when none is attached.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from nanoclaw.types import AvailableGroup


class Channel(ABC):
    """A connection to one messaging platform.

    Optional capabilities have no-op defaults; override them where the
    platform supports them.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Short platform identifier, e.g. ``whatsapp``."""

    @abstractmethod
    async def connect(self) -> None:
        """Connect and return once messages can flow."""

    @abstractmethod
    async def send_message(self, jid: str, text: str) -> None:
        """Deliver text to a chat."""

    @abstractmethod
    def is_connected(self) -> bool:
        """True while connected."""

    @abstractmethod
    def owns_jid(self, jid: str) -> bool:
        """True if chat ids of this shape belong to this platform."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect during shutdown. Must not raise."""

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        """Show or clear a typing indicator."""
        return

    async def get_available_groups(self) -> list[AvailableGroup]:
        """Chats the adapter can see, for the main group's snapshot."""
        return []


# end src/nanoclaw/channels/base.py
