from abc import ABC, abstractmethod
from typing import Optional

from ifilm_proxy.configs import settings
from ifilm_proxy.schemas import UpstreamConfig


class ConfigProvider(ABC):
    """Supplies the active upstream server configuration."""

    @abstractmethod
    async def load_active_config(self) -> Optional[UpstreamConfig]:
        """Return the active configuration, or None when the upstream server is not configured."""
        pass


class SettingsConfigProvider(ConfigProvider):
    """Reads the upstream server URL and API key from the application settings."""

    async def load_active_config(self) -> Optional[UpstreamConfig]:
        if not settings.upstream_server_url or not settings.upstream_api_key:
            return None
        return UpstreamConfig(server_url=settings.upstream_server_url, api_key=settings.upstream_api_key)


class StaticConfigProvider(ConfigProvider):
    def __init__(self, config: Optional[UpstreamConfig]):
        self.config = config

    async def load_active_config(self) -> Optional[UpstreamConfig]:
        return self.config
