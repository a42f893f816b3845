import logging
from typing import Dict, Optional

import httpx
from pydantic import ValidationError

from ifilm_proxy.configs import settings
from ifilm_proxy.const import UPSTREAM_TOKEN_HEADER
from ifilm_proxy.errors import AuthFailureError, UpstreamUnreachableError
from ifilm_proxy.schemas import ItemDetails, UpstreamConfig
from ifilm_proxy.utils.http_utils import DownloadError, create_httpx_client, redact_url, request_with_retry

logger = logging.getLogger(__name__)


class JellyfinClient:
    """Thin client for the handful of upstream media-server calls the streaming path needs."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self.timeout = timeout or settings.upstream_metadata_timeout
        self._owns_client = client is None
        self.client = client or create_httpx_client(timeout=httpx.Timeout(self.timeout))
        self.base_headers = {"user-agent": settings.user_agent}

    @staticmethod
    def client_headers() -> Dict[str, str]:
        return {
            "X-Emby-Client": settings.upstream_client_name,
            "X-Emby-Device-Name": settings.upstream_device_name,
            "X-Emby-Device-Id": settings.upstream_device_id,
            "X-Emby-Client-Version": settings.upstream_client_version,
        }

    async def _make_request(
        self,
        url: str,
        method: str = "GET",
        token: Optional[str] = None,
        headers: Optional[Dict] = None,
        **kwargs,
    ) -> httpx.Response:
        request_headers = self.base_headers.copy()
        if token:
            request_headers[UPSTREAM_TOKEN_HEADER] = token
        if headers:
            request_headers.update(headers)

        try:
            return await request_with_retry(
                self.client, method, url, request_headers, timeout=httpx.Timeout(self.timeout), **kwargs
            )
        except DownloadError as e:
            if e.is_auth_failure:
                raise AuthFailureError(e.message, upstream_status=e.status_code) from e
            raise UpstreamUnreachableError(e.message, status_code=e.status_code, upstream_status=e.status_code) from e

    async def authenticate_by_name(self, config: UpstreamConfig, username: str, password: str) -> str:
        """
        Log in as a named upstream user.

        Args:
            config (UpstreamConfig): Active upstream configuration.
            username (str): Upstream user name.
            password (str): Upstream password.

        Returns:
            str: The access token issued by the upstream server.

        Raises:
            AuthFailureError: If the credentials are rejected or no token is returned.
        """
        response = await self._make_request(
            f"{config.base_url}/Users/AuthenticateByName",
            method="POST",
            headers=self.client_headers(),
            json={"Username": username, "Pw": password},
        )
        try:
            token = response.json().get("AccessToken")
        except ValueError:
            token = None
        if not token:
            raise AuthFailureError(f"Upstream returned no access token for user {username}", upstream_status=200)
        logger.info(f"Authenticated with the upstream server as {username}")
        return token

    async def authenticate_viewer(self, config: UpstreamConfig) -> str:
        return await self.authenticate_by_name(
            config, settings.public_viewer_username, settings.public_viewer_password
        )

    async def get_first_user_id(self, config: UpstreamConfig, token: str) -> Optional[str]:
        """Id of the first user visible to ``token``; the response may be a bare list or an ``Items`` page."""
        response = await self._make_request(f"{config.base_url}/Users", token=token)
        data = response.json()
        users = data.get("Items", []) if isinstance(data, dict) else data
        if not users or not isinstance(users[0], dict):
            return None
        return users[0].get("Id")

    async def get_item_details(self, config: UpstreamConfig, item_id: str, token: str) -> ItemDetails:
        """
        Fetch an item's metadata in the context of the first visible user.

        Args:
            config (UpstreamConfig): Active upstream configuration.
            item_id (str): Upstream item identifier.
            token (str): Credential to present.

        Returns:
            ItemDetails: The item with its media sources.
        """
        user_id = await self.get_first_user_id(config, token)
        if user_id:
            url = f"{config.base_url}/Users/{user_id}/Items/{item_id}"
        else:
            url = f"{config.base_url}/Items/{item_id}"

        response = await self._make_request(url, token=token)
        try:
            return ItemDetails.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise UpstreamUnreachableError(
                f"Unreadable item metadata from {redact_url(url)}: {e}", upstream_status=response.status_code
            ) from e

    async def close(self):
        if self._owns_client:
            await self.client.aclose()
