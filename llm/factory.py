"""Factory for creating vision provider instances."""

from typing import Dict, Any, List, Optional
from core.config import Settings
from core.errors import ConfigError
from .base import VisionProvider, ProviderNotConfiguredError
from .claude import ClaudeProvider
from .ollama import OllamaProvider
import logging

logger = logging.getLogger(__name__)


class VisionFactory:
    """Factory for creating vision provider instances from Settings.

        settings = load_settings()
        provider = VisionFactory.create_provider("claude", settings)
    """

    PROVIDERS = {
        "claude": ClaudeProvider,
        "ollama": OllamaProvider,
    }

    @classmethod
    def create_provider(
        cls,
        provider_name: str,
        settings: Settings,
        model_name: Optional[str] = None,
    ) -> VisionProvider:
        """Create a vision provider; raises when it is unknown or lacks credentials."""
        if provider_name not in cls.PROVIDERS:
            available = ", ".join(cls.PROVIDERS.keys())
            raise ConfigError(f"Unknown provider: {provider_name}. Available: {available}")

        provider_config = settings.providers.get(provider_name, {})
        if not provider_config:
            raise ConfigError(f"No configuration found for provider: {provider_name}")

        provider_config = dict(provider_config)
        if model_name:
            provider_config["model"] = model_name

        provider = cls.PROVIDERS[provider_name](provider_config)

        if not provider.enabled:
            api_key_env = provider_config.get("api_key_env", f"{provider_name.upper()}_API_KEY")
            raise ProviderNotConfiguredError(
                f"Provider '{provider_name}' is not configured. "
                f"Please set {api_key_env} in your environment or .env file."
            )

        return provider

    @classmethod
    def create_default_provider(cls, settings: Settings) -> VisionProvider:
        return cls.create_provider(settings.gateway.provider, settings)

    @classmethod
    def get_enabled_providers(cls, settings: Settings) -> List[str]:
        """Names of providers that can be created with the current environment."""
        enabled = []
        for provider_name in cls.PROVIDERS:
            try:
                cls.create_provider(provider_name, settings)
            except (ConfigError, ProviderNotConfiguredError) as e:
                logger.debug(f"Provider {provider_name} not available: {e}")
                continue
            enabled.append(provider_name)
        return enabled

    @classmethod
    def describe_providers(cls, settings: Settings) -> Dict[str, Any]:
        enabled = set(cls.get_enabled_providers(settings))
        return {
            name: {
                "model": settings.providers.get(name, {}).get("model"),
                "enabled": name in enabled,
            }
            for name in cls.PROVIDERS
        }
