from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, AsyncGenerator, Generator, Optional

import httpx

from authflow.client.token_refresh import DEFAULT_THRESHOLD_SECONDS, TokenRefreshScheduler
from authflow.logging import get_logger
from authflow.service.scheduler import AsyncioScheduler, Scheduler

logger = get_logger(__name__)

DEVICE_ID_HEADER = "X-Device-ID"


def load_or_create_device_id(path: Optional[Path] = None) -> str:
    """Device ids survive restarts when a path is given, like browser local storage."""
    if path is not None and path.exists():
        stored = path.read_text(encoding="utf-8").strip()
        if stored:
            return stored
    device_id = str(uuid.uuid4())
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(device_id, encoding="utf-8")
    return device_id


class RefreshingBearerAuth(httpx.Auth):
    """Bearer auth that refreshes once on a 401 and replays the request."""

    def __init__(self, tokens: TokenRefreshScheduler) -> None:
        self.tokens = tokens

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        if self.tokens.access_token:
            request.headers["Authorization"] = f"Bearer {self.tokens.access_token}"
        yield request

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        if self.tokens.access_token:
            request.headers["Authorization"] = f"Bearer {self.tokens.access_token}"
        response = yield request
        if response.status_code != 401 or not self.tokens.access_token:
            return
        logger.info("request_unauthorized_refreshing", url=str(request.url))
        new_token = await self.tokens.refresh_now()
        if new_token:
            request.headers["Authorization"] = f"Bearer {new_token}"
            yield request


class AuthClient:
    """Async client for the backend API mirroring what the browser frontend does."""

    def __init__(
        self,
        base_url: str = "http://localhost:3001",
        *,
        device_id: Optional[str] = None,
        device_id_path: Optional[Path] = None,
        scheduler: Optional[Scheduler] = None,
        threshold_seconds: float = DEFAULT_THRESHOLD_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        user_agent: str = "authflow-client",
    ) -> None:
        self.device_id = device_id or load_or_create_device_id(device_id_path)
        self.logged_out = False
        self._http = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/api",
            headers={DEVICE_ID_HEADER: self.device_id, "User-Agent": user_agent},
            transport=transport,
            timeout=timeout,
        )
        self.tokens = TokenRefreshScheduler(
            scheduler or AsyncioScheduler(),
            self._rotate,
            self._handle_logout,
            threshold_seconds=threshold_seconds,
        )
        self.auth = RefreshingBearerAuth(self.tokens)

    @property
    def access_token(self) -> Optional[str]:
        return self.tokens.access_token

    @property
    def cookies(self) -> httpx.Cookies:
        return self._http.cookies

    def _handle_logout(self) -> None:
        self.logged_out = True
        logger.info("client_logged_out", device_id=self.device_id)

    async def _rotate(self) -> Optional[str]:
        response = await self._http.post("/auth/refresh")
        if response.status_code != 200:
            logger.warning("client_refresh_rejected", status_code=response.status_code)
            return None
        return response.json().get("accessToken")

    async def login(self, username: str, password: str) -> str:
        response = await self._http.post(
            "/auth/login", json={"username": username, "password": password}
        )
        response.raise_for_status()
        token = response.json()["accessToken"]
        self.logged_out = False
        self.tokens.start(token)
        return token

    def adopt_token(self, access_token: str) -> None:
        """Take over a token delivered by the OAuth callback redirect."""
        self.logged_out = False
        self.tokens.start(access_token)

    async def refresh(self) -> Optional[str]:
        return await self.tokens.refresh_now()

    async def logout(self) -> None:
        # Timer is cancelled before the logout request goes out
        token = self.tokens.access_token
        self.tokens.stop()
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            response = await self._http.post("/auth/logout", headers=headers)
            if response.status_code != 200:
                logger.warning("client_logout_rejected", status_code=response.status_code)
        finally:
            self._http.cookies.clear()
            self._handle_logout()

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self._http.request(method, path, auth=self.auth, **kwargs)

    async def get_json(self, path: str) -> Any:
        response = await self.request("GET", path)
        response.raise_for_status()
        return response.json()

    async def list_sessions(self) -> list[dict[str, Any]]:
        return (await self.get_json("/auth/sessions"))["sessions"]

    async def revoke_session(
        self, *, device_id: Optional[str] = None, session_id: Optional[str] = None
    ) -> None:
        body = {"deviceId": device_id} if device_id else {"sessionId": session_id}
        response = await self.request("POST", "/auth/sessions/revoke", json=body)
        response.raise_for_status()

    async def start_oauth(self, provider: str, *, pkce: bool = False) -> dict[str, str]:
        params = {"pkce": "true"} if pkce else None
        response = await self._http.get(f"/auth/oauth/{provider}", params=params)
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        self.tokens.stop()
        await self._http.aclose()

    async def __aenter__(self) -> "AuthClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
