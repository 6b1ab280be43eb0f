from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Optional

import httpx

from storyshort.clients.errors import MissingCredentialsError, TransientError, classify_http_error

PROVIDER = "OpenAI Images"


class OpenAIImageClient:
    def __init__(
        self,
        api_key: str | None,
        model: str = "dall-e-3",
        size: str = "1024x1792",
        base_url: str = "https://api.openai.com",
        timeout: float = 60.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.model = model
        self.size = size
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.log = logger or logging.getLogger(__name__)

    def enabled(self) -> bool:
        return bool(self.api_key)

    def generate(self, prompt: str) -> bytes:
        if not self.enabled():
            raise MissingCredentialsError(
                PROVIDER,
                "Image generation is not configured: set STORYSHORT_OPENAI_API_KEY",
            )
        url = f"{self.base_url}/v1/images/generations"
        payload = {
            "model": self.model,
            "prompt": prompt,
            "n": 1,
            "size": self.size,
            "response_format": "b64_json",
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        with httpx.Client(timeout=self.timeout) as client:
            try:
                response = client.post(url, headers=headers, json=payload)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                error = classify_http_error(PROVIDER, exc)
                self.log.warning(
                    "image generation failed",
                    extra={"category": error.category.value, "detail": error.detail, "model": self.model},
                )
                raise error from exc
        return self._decode(response.json())

    def _decode(self, body: dict[str, Any]) -> bytes:
        items = body.get("data") or []
        encoded = items[0].get("b64_json") if items else None
        if not encoded:
            raise TransientError(PROVIDER, "image provider returned no image data")
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise TransientError(PROVIDER, "image provider returned malformed image data") from exc
