"""Adapters for the external services step actions depend on."""

from .base import ContentGenerationService, EmailIntegration
from .gmail import GmailClient
from .images import GeminiImageGenerator

__all__ = [
    "ContentGenerationService",
    "EmailIntegration",
    "GeminiImageGenerator",
    "GmailClient",
]
