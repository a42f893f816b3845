import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ifilm_proxy.configs import settings
from ifilm_proxy.errors import StreamError
from ifilm_proxy.schemas import UpstreamConfig
from ifilm_proxy.utils.http_utils import DownloadError

logger = logging.getLogger(__name__)

Authenticator = Callable[[UpstreamConfig], Awaitable[str]]


@dataclass(frozen=True)
class UpstreamCredential:
    token: str
    acquired_at: float
    server_url: str = ""
    is_fallback: bool = False

    def is_expired(self, now: float, ttl: float) -> bool:
        return now - self.acquired_at >= ttl


class SessionTokenCache:
    """
    Process-wide cache of the synthetic viewer's upstream token.

    At most one authentication is in flight at a time. Callers arriving during a refresh
    get the previous (possibly expired) credential instead of waiting, and only block
    when there is nothing cached at all. When authentication fails the static API key
    of the active configuration is handed out without being cached, so the next call
    tries to authenticate again.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        ttl: float = settings.upstream_token_ttl,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._authenticator = authenticator
        self.ttl = ttl
        self._clock = clock
        self._credential: Optional[UpstreamCredential] = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> Optional[UpstreamCredential]:
        return self._credential

    def _usable(self, credential: Optional[UpstreamCredential], config: UpstreamConfig) -> bool:
        return (
            credential is not None
            and credential.server_url == config.base_url
            and not credential.is_expired(self._clock(), self.ttl)
        )

    async def get_token(self, config: UpstreamConfig) -> UpstreamCredential:
        """
        Return a credential for the upstream server described by ``config``.

        Args:
            config (UpstreamConfig): Active upstream configuration.

        Returns:
            UpstreamCredential: The cached viewer token, a freshly acquired one, or the static API key.
        """
        current = self._credential
        if self._usable(current, config):
            return current

        if self._lock.locked() and current is not None and current.server_url == config.base_url:
            logger.debug("Token refresh in progress, reusing the previous token")
            return current

        async with self._lock:
            current = self._credential
            if self._usable(current, config):
                return current
            return await self._refresh(config)

    async def _refresh(self, config: UpstreamConfig) -> UpstreamCredential:
        try:
            token = await self._authenticator(config)
        except (DownloadError, StreamError) as e:
            logger.warning(f"Viewer authentication failed, falling back to the API key: {e}")
            self._credential = None
            return UpstreamCredential(config.api_key, self._clock(), config.base_url, is_fallback=True)

        credential = UpstreamCredential(token, self._clock(), config.base_url)
        self._credential = credential
        logger.info("Acquired a new upstream viewer token")
        return credential

    def invalidate(self, token: Optional[str] = None) -> None:
        """
        Evict the cached credential.

        Args:
            token (str, optional): Only evict when the cached credential carries this token, so a
                request holding an outdated token cannot evict a newer one.
        """
        if self._credential is None:
            return
        if token is None or self._credential.token == token:
            logger.info("Discarding the cached upstream viewer token")
            self._credential = None
