from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import aiohttp

from xui_bot.errors import ApiError, AuthError, ConfigError, NetworkError
from xui_bot.models import PanelConfig
from xui_bot.services.logger_service import LoggerService

SESSION_COOKIE_NAME = "3x-ui"
DEFAULT_TIMEOUT_SEC = 30.0
FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}
INBOUNDS_API = "/panel/api/inbounds"


@dataclass
class PanelResponse:
    status: int
    body: str
    cookies: dict[str, str] = field(default_factory=dict)


class PanelClient:
    """Authenticated access to a single 3x-ui panel.

    The session cookie is obtained lazily on the first call. A 401 answer drops
    it, triggers one login and one retry of the same request; a second 401 is
    raised as `ApiError` instead of looping.
    """

    def __init__(
        self,
        config: PanelConfig,
        logger: LoggerService | None = None,
        *,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
    ) -> None:
        self.config = config
        self.logger = logger
        self.timeout_sec = timeout_sec
        self.cookie: str | None = None
        self._login_lock = asyncio.Lock()

    @property
    def server_id(self) -> str:
        return self.config.id

    def server_info(self) -> dict[str, str]:
        return {
            "id": self.config.id,
            "name": self.config.name,
            "host": self.config.host,
            "port": self.config.port,
        }

    async def login(self) -> None:
        async with self._login_lock:
            await self._login_unlocked()

    async def list_inbounds(self) -> dict[str, Any]:
        return await self._request("GET", f"{INBOUNDS_API}/list")

    async def get_inbound(self, inbound_id: int) -> dict[str, Any]:
        return await self._request("GET", f"{INBOUNDS_API}/get/{int(inbound_id)}")

    async def add_client(self, inbound_id: int, client: dict[str, Any]) -> dict[str, Any]:
        if not client:
            raise ConfigError("Client data is required", server_id=self.server_id)
        return await self._request(
            "POST",
            f"{INBOUNDS_API}/addClient",
            {"id": str(int(inbound_id)), "settings": _client_settings(client)},
        )

    async def update_client(self, uuid: str, inbound_id: int, client: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{INBOUNDS_API}/updateClient/{_segment(uuid)}",
            {"id": str(int(inbound_id)), "settings": _client_settings(client)},
        )

    async def delete_client(self, inbound_id: int, uuid: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{INBOUNDS_API}/delClient/{_segment(uuid)}",
            {"id": str(int(inbound_id)), "uuid": uuid},
        )

    async def get_client_traffic(self, email: str) -> dict[str, Any]:
        return await self._request("GET", f"{INBOUNDS_API}/getClientTraffics/{_segment(email)}")

    async def get_client_traffic_by_id(self, uuid: str) -> dict[str, Any]:
        # The panel answers with a list here, unlike the by-email lookup.
        return await self._request("GET", f"{INBOUNDS_API}/getClientTrafficsById/{_segment(uuid)}")

    async def reset_client_traffic(self, inbound_id: int, email: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{INBOUNDS_API}/resetClientTraffic/{_segment(email)}",
            {"id": str(int(inbound_id)), "email": email},
        )

    async def _ensure_authenticated(self) -> None:
        if self.cookie:
            return
        async with self._login_lock:
            if self.cookie:
                return
            await self._login_unlocked()

    async def _relogin(self, stale_cookie: str | None) -> None:
        async with self._login_lock:
            if self.cookie and self.cookie != stale_cookie:
                # A concurrent call already replaced the expired session.
                return
            await self._login_unlocked()

    async def _login_unlocked(self) -> None:
        self.cookie = None
        try:
            response = await self._send(
                "POST",
                "/login",
                {"username": self.config.username, "password": self.config.password},
            )
            if response.status >= 400:
                raise AuthError(f"Login failed: HTTP {response.status}", server_id=self.server_id)
            try:
                payload = json.loads(response.body)
            except ValueError as exc:
                raise AuthError("Login failed: panel returned a non-JSON response", server_id=self.server_id) from exc
            if not isinstance(payload, dict) or not payload.get("success"):
                msg = payload.get("msg") if isinstance(payload, dict) else None
                raise AuthError(f"Login failed: {msg or 'rejected by panel'}", server_id=self.server_id)
            value = response.cookies.get(SESSION_COOKIE_NAME)
            if not value:
                raise AuthError("Login failed: no session cookie returned", server_id=self.server_id)
        except AuthError as exc:
            self._log("panel.login_failed", error=exc.message)
            raise
        self.cookie = f"{SESSION_COOKIE_NAME}={value}"
        self._log("panel.login_ok")

    async def _request(self, method: str, path: str, data: dict[str, str] | None = None) -> dict[str, Any]:
        await self._ensure_authenticated()
        sent_cookie = self.cookie
        response = await self._send(method, path, data)
        if response.status == 401:
            self._log("panel.session_expired", path=path)
            await self._relogin(sent_cookie)
            response = await self._send(method, path, data)
            if response.status == 401:
                self.cookie = None
                raise ApiError(
                    f"Panel rejected {path} again after re-login",
                    server_id=self.server_id,
                    status=401,
                )
        return self._decode(response, path)

    async def _send(self, method: str, path: str, data: dict[str, str] | None = None) -> PanelResponse:
        url = f"{self.config.base_url}{path}"
        headers = dict(FORM_HEADERS)
        if self.cookie:
            headers["Cookie"] = self.cookie
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)
        try:
            async with aiohttp.ClientSession(timeout=timeout, cookie_jar=aiohttp.DummyCookieJar()) as session:
                async with session.request(method, url, data=data, headers=headers) as response:
                    body = await response.text()
                    cookies = {name: morsel.value for name, morsel in response.cookies.items()}
                    return PanelResponse(status=response.status, body=body, cookies=cookies)
        except asyncio.TimeoutError as exc:
            raise NetworkError(
                f"Timed out after {self.timeout_sec:g}s on {method} {path}",
                server_id=self.server_id,
            ) from exc
        except aiohttp.ClientError as exc:
            raise NetworkError(f"{method} {path} failed: {exc}", server_id=self.server_id) from exc

    def _decode(self, response: PanelResponse, path: str) -> dict[str, Any]:
        if not 200 <= response.status < 300:
            raise ApiError(
                f"HTTP {response.status} from {path}: {response.body[:300]}",
                server_id=self.server_id,
                status=response.status,
            )
        try:
            payload = json.loads(response.body)
        except ValueError as exc:
            raise ApiError(
                f"Non-JSON response from {path}",
                server_id=self.server_id,
                status=response.status,
            ) from exc
        if not isinstance(payload, dict):
            raise ApiError(f"Unexpected response shape from {path}", server_id=self.server_id, status=response.status)
        return payload

    def _log(self, event: str, **data: object) -> None:
        if self.logger is not None:
            self.logger.log(event, server_id=self.server_id, server_name=self.config.name, **data)


def _client_settings(client: dict[str, Any]) -> str:
    return json.dumps({"clients": [client]})


def _segment(value: str) -> str:
    return quote(str(value), safe="@")
