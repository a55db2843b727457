"""Anthropic Claude vision provider (Messages API with base64 image blocks)."""

import logging
from typing import Any, Dict, List

import httpx

from .base import VisionProvider, VisionRequest, VisionResponse

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class ClaudeProvider(VisionProvider):
    """Anthropic Claude vision provider."""

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.get("base_url", "https://api.anthropic.com"),
            headers={
                "x-api-key": self.api_key or "",
                "anthropic-version": ANTHROPIC_VERSION,
                "Content-Type": "application/json",
            },
            timeout=self.config.get("timeout", 60),
        )

    @staticmethod
    def _message_content(request: VisionRequest) -> List[Dict[str, Any]]:
        # image first, instruction second
        image = {"type": "base64", "media_type": request.media_type, "data": request.image_base64}
        return [{"type": "image", "source": image}, {"type": "text", "text": request.prompt}]

    async def generate(self, request: VisionRequest) -> VisionResponse:
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [{"role": "user", "content": self._message_content(request)}],
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt

        try:
            response = await self.client.post("/v1/messages", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            return self._failure(f"HTTP {e.response.status_code}: {e.response.text}")
        except (httpx.HTTPError, ValueError) as e:
            return self._failure(f"Claude request error: {e}")

        text = "".join(block.get("text", "") for block in data.get("content", []) if block.get("type") == "text")
        usage = data.get("usage", {})
        return self._reply(
            text,
            usage.get("input_tokens", 0),
            usage.get("output_tokens", 0),
            stop_reason=data.get("stop_reason"),
            request_id=response.headers.get("request-id"),
        )
