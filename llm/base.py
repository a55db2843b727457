"""Abstract base classes for vision providers."""

import os
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional
import httpx
from pydantic import BaseModel
import logging

from core.errors import ConfigError

logger = logging.getLogger(__name__)


class ProviderNotConfiguredError(ConfigError):
    """Raised when a provider is selected but its API key is missing."""


class VisionRequest(BaseModel):
    """Standardized image + instruction request for all vision providers."""
    prompt: str
    image_base64: str
    media_type: str = "image/jpeg"
    system_prompt: Optional[str] = None
    temperature: float = 0.0
    max_tokens: int = 1024
    metadata: Dict[str, Any] = {}


class VisionResponse(BaseModel):
    """Standardized response format for all vision providers."""
    content: str
    provider: str
    model: str
    usage: Dict[str, int] = {}
    metadata: Dict[str, Any] = {}
    error: Optional[str] = None


class VisionProvider(ABC):
    """Abstract base class for all vision providers."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.provider_name = self.__class__.__name__.replace("Provider", "").lower()
        self.model = config.get("model", "unknown")
        self.input_cost_per_mtok = float(config.get("input_cost_per_mtok", 0.0))
        self.output_cost_per_mtok = float(config.get("output_cost_per_mtok", 0.0))
        self.api_key = self._get_api_key()
        self._client: Optional[httpx.AsyncClient] = None

    def _get_api_key(self) -> Optional[str]:
        """Get API key from environment variable."""
        api_key_env = self.config.get("api_key_env")
        if api_key_env:
            return os.getenv(api_key_env)
        return None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    @abstractmethod
    async def generate(self, request: VisionRequest) -> VisionResponse:
        """Generate a response for an image and instruction."""
        pass

    def estimate_cost(self, usage: Dict[str, int]) -> float:
        """USD cost of a call from its token usage."""
        prompt_tokens = usage.get("prompt_tokens", 0)
        completion_tokens = usage.get("completion_tokens", 0)
        return (
            prompt_tokens / 1_000_000 * self.input_cost_per_mtok
            + completion_tokens / 1_000_000 * self.output_cost_per_mtok
        )

    def _reply(self, content: str, prompt_tokens: int, completion_tokens: int, **metadata: Any) -> VisionResponse:
        return VisionResponse(
            content=content,
            provider=self.provider_name,
            model=self.model,
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
            metadata=metadata,
        )

    def _failure(self, error_msg: str) -> VisionResponse:
        logger.error(f"{self.provider_name} request failed: {error_msg}")
        return VisionResponse(content="", provider=self.provider_name, model=self.model, error=error_msg)

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.get("timeout", 60))

    @property
    def client(self) -> httpx.AsyncClient:
        """HTTP client, opened on first request so that checking `enabled` stays free."""
        if self._client is None:
            self._client = self._build_client()
        return self._client

    async def aclose(self) -> None:
        """Release the HTTP client, if one was opened."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> bool:
        """Check if the provider is reachable with a 1x1 test image."""
        try:
            test_request = VisionRequest(
                prompt="Reply with OK.",
                image_base64=TINY_PNG_BASE64,
                media_type="image/png",
                max_tokens=10,
            )
            response = await self.generate(test_request)
            return response.error is None
        except Exception as e:
            logger.error(f"Health check failed for {self.provider_name}: {e}")
            return False


TINY_PNG_BASE64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)
