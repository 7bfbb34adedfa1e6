"""Image generation through the Gemini ``generateContent`` REST endpoint."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..config import ContentGenerationConfig
from ..errors import ContentGenerationError
from .base import ContentGenerationService

logger = logging.getLogger(__name__)


def _as_asset_reference(text: str) -> Optional[str]:
    text = text.strip()
    if text.startswith("data:image") or text.startswith("http"):
        return text
    return None


class GeminiImageGenerator(ContentGenerationService):
    """Generate images and return them as ``data:`` URLs."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = ContentGenerationConfig().model,
        base_url: str = ContentGenerationConfig().base_url,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._client = client

    @classmethod
    def from_config(cls, config: ContentGenerationConfig) -> "GeminiImageGenerator":
        return cls(api_key=config.api_key, model=config.model, base_url=config.base_url)

    async def generate(self, prompt: str, context_text: Optional[str] = None) -> str:
        if not self._api_key:
            raise ContentGenerationError("Gemini API key is not configured")

        full_prompt = prompt
        if context_text:
            full_prompt = (
                f"{prompt}\n\nExcel Data Context:\n{context_text}\n\n"
                "Use the insights from this Excel data to inform the image generation."
            )
        body = {
            "contents": [{"parts": [{"text": full_prompt}]}],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }
        url = f"{self._base_url}/models/{self._model}:generateContent"
        try:
            if self._client is not None:
                response = await self._client.post(
                    url, params={"key": self._api_key}, json=body
                )
            else:
                async with httpx.AsyncClient(timeout=60.0) as client:
                    response = await client.post(
                        url, params={"key": self._api_key}, json=body
                    )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ContentGenerationError(f"Failed to generate image: {e}") from e

        return self._extract_asset(response.json())

    @staticmethod
    def _extract_asset(data: dict[str, Any]) -> str:
        for candidate in data.get("candidates", [])[:1]:
            parts = candidate.get("content", {}).get("parts", [])
            for part in parts:
                inline = part.get("inlineData")
                if inline and inline.get("data"):
                    mime = inline.get("mimeType", "image/png")
                    return f"data:{mime};base64,{inline['data']}"
            for part in parts:
                if "text" in part and (ref := _as_asset_reference(part["text"])):
                    return ref
        raise ContentGenerationError(
            "No image data found in response. The model may not have generated an image."
        )
