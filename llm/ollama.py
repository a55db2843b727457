"""Ollama local vision provider (llava, bakllava, llama3.2-vision...)."""

import logging
from typing import Any, Dict, List

import httpx

from .base import VisionProvider, VisionRequest, VisionResponse

logger = logging.getLogger(__name__)


class OllamaProvider(VisionProvider):
    """Vision models served by a local Ollama daemon through /api/chat."""

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.base_url = config.get("base_url", "http://localhost:11434")

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.config.get("timeout", 120))

    def _get_api_key(self) -> str:
        # no key for a local daemon; always enabled
        return "local"

    @staticmethod
    def _messages(request: VisionRequest) -> List[Dict[str, Any]]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt, "images": [request.image_base64]})
        return messages

    async def generate(self, request: VisionRequest) -> VisionResponse:
        payload = {
            "model": self.model,
            "messages": self._messages(request),
            "format": "json",
            "stream": False,
            "options": {"temperature": request.temperature, "num_predict": request.max_tokens},
        }

        try:
            response = await self.client.post("/api/chat", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            return self._failure(f"HTTP {e.response.status_code}: {e.response.text}")
        except (httpx.HTTPError, ValueError) as e:
            return self._failure(f"Ollama request error: {e}")

        return self._reply(
            (data.get("message") or {}).get("content", ""),
            data.get("prompt_eval_count") or 0,
            data.get("eval_count") or 0,
            done=data.get("done", False),
            total_duration=data.get("total_duration"),
        )

    async def health_check(self) -> bool:
        """True when the daemon answers and has pulled the configured model."""
        try:
            response = await self.client.get("/api/tags")
        except httpx.HTTPError as e:
            logger.error(f"Ollama health check failed: {e}")
            return False
        if response.status_code != 200:
            return False
        names = [entry.get("name", "") for entry in response.json().get("models", [])]
        return any(name.split(":")[0] == self.model.split(":")[0] for name in names)
