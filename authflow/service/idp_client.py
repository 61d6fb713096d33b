from __future__ import annotations

from typing import Any, Optional

import httpx

from authflow.config import ProviderClient, Settings
from authflow.logging import get_logger
from authflow.service.errors import UpstreamProviderError, UpstreamTimeout

logger = get_logger(__name__)


class IdPClient:
    """Calls the identity provider's token and userinfo endpoints.

    Every request is bounded by ``upstream_timeout_seconds``; a slow provider
    surfaces as ``UpstreamTimeout`` instead of a hung callback.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.upstream_timeout_seconds,
            follow_redirects=False,
            transport=self.transport,
        )

    async def exchange_code(
        self, client: ProviderClient, code: str, *, redirect_uri: Optional[str] = None
    ) -> dict[str, Any]:
        body = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or client.redirect_uri,
            "client_id": client.client_id,
            "client_secret": client.client_secret,
            "provider": client.provider,
        }
        return await self._request(
            "POST",
            self.settings.idp_token_url,
            step="token_exchange",
            provider=client.provider,
            json=body,
            headers={"Accept": "application/json"},
        )

    async def fetch_userinfo(self, provider: str, access_token: str) -> dict[str, Any]:
        return await self._request(
            "GET",
            self.settings.idp_userinfo_url,
            step="userinfo",
            provider=provider,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    async def _request(
        self, method: str, url: str, *, step: str, provider: str, **kwargs: Any
    ) -> dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as exc:
            logger.error("idp_request_timeout", step=step, provider=provider, url=url)
            raise UpstreamTimeout(f"Identity provider timed out during {step}") from exc
        except httpx.HTTPStatusError as exc:
            logger.error(
                "idp_request_http_error",
                step=step,
                provider=provider,
                status_code=exc.response.status_code,
                body=exc.response.text[:500],
            )
            raise UpstreamProviderError(
                f"Identity provider rejected {step}",
                detail={"status_code": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("idp_request_failed", step=step, provider=provider, error=str(exc))
            raise UpstreamProviderError(f"Identity provider unreachable during {step}") from exc
        except ValueError as exc:
            logger.error("idp_response_parse_error", step=step, provider=provider, error=str(exc))
            raise UpstreamProviderError(f"Identity provider sent invalid JSON during {step}") from exc
        if not isinstance(payload, dict):
            raise UpstreamProviderError(f"Identity provider sent an unexpected {step} payload")
        return payload
