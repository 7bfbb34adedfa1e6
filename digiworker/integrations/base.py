"""Boundaries of the external integrations used by step actions."""

from __future__ import annotations

from typing import Any, Optional, Protocol


class EmailIntegration(Protocol):
    async def is_connected(self) -> bool:
        """Return ``True`` when the integration can currently be used."""

    async def send(self, to: str, subject: str, body: str) -> str:
        """Send an email and return the provider message id."""

    async def read_recent(self, n: int) -> list[dict[str, Any]]:
        """Return summaries of the ``n`` most recent inbox messages."""

    async def modify_labels(self, email_id: str, label: str) -> None:
        """Add ``label`` to the message ``email_id``."""


class ContentGenerationService(Protocol):
    async def generate(self, prompt: str, context_text: Optional[str] = None) -> str:
        """Generate an asset and return a reference to it (URL or data URL)."""
