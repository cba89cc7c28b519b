"""Front-end client for the installer bus.

The front-end is a stateless view: it reads a snapshot, then follows events.
When the connection drops it reconnects and starts again from a fresh
snapshot; back-end state is never reset from this side.
"""

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx

from installer.errors import ERRORS_BY_NAME, InstallerError, TransportError
from installer.models.events import Event, SnapshotEvent, parse_event
from installer.models.install_config import InstallConfig
from installer.models.session import StatusSnapshot
from installer.services.disks import Disk


class InstallerClient:
    """Async client speaking to the back-end over its Unix socket."""

    def __init__(
        self,
        socket_path: str = "/run/installer/installer.sock",
        token_path: str = "/run/installer/session-token",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 15.0,
    ):
        """Initialize client.

        Args:
            socket_path: Back-end Unix socket
            token_path: Access token file issued to the session user
            transport: Custom httpx transport (defaults to the Unix socket)
            timeout: Timeout for command calls (abort may wait for a stage)
            reconnect_delay: First back-off delay for watch()
            max_reconnect_delay: Back-off ceiling for watch()
        """
        self.logger = logging.getLogger("installer.client")
        self.token_path = Path(token_path)
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self._client = httpx.AsyncClient(
            transport=transport or httpx.AsyncHTTPTransport(uds=socket_path),
            base_url="http://installer/api/v1.0",
            timeout=timeout,
        )

    async def __aenter__(self) -> "InstallerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict:
        try:
            token = self.token_path.read_text(encoding="utf-8").strip()
        except OSError:
            # Unauthorized callers can still run read-only queries if policy allows
            return {}
        return {"Authorization": f"Bearer {token}"}

    async def _call(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        try:
            response = await self._client.request(method, path, json=json, headers=self._headers())
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise TransportError(f"Installer service unreachable: {e}") from e
        except ValueError as e:
            raise TransportError(f"Malformed response from installer service: {e}") from e

        code = body.get("code")
        if code != 200:
            error_cls = ERRORS_BY_NAME.get(body.get("error"), InstallerError)
            raise error_cls(body.get("msg", "Unknown error"), state=body.get("state"))
        return body

    async def get_status(self) -> StatusSnapshot:
        body = await self._call("GET", "/status")
        return StatusSnapshot.model_validate(body["data"])

    async def get_disks(self) -> list[Disk]:
        body = await self._call("GET", "/disks")
        return [Disk.model_validate(d) for d in body["data"]]

    async def start_install(self, config: InstallConfig) -> StatusSnapshot:
        payload = config.model_dump(mode="json")
        # model_dump masks SecretStr; the back-end needs the real values
        payload["disk_passphrase"] = config.disk_passphrase.get_secret_value()
        payload["account"]["password"] = config.account.password.get_secret_value()
        body = await self._call("POST", "/install", json=payload)
        return StatusSnapshot.model_validate(body["data"])

    async def begin(self) -> StatusSnapshot:
        body = await self._call("POST", "/begin")
        return StatusSnapshot.model_validate(body["data"])

    async def retry(self) -> StatusSnapshot:
        body = await self._call("POST", "/retry")
        return StatusSnapshot.model_validate(body["data"])

    async def abort(self) -> StatusSnapshot:
        body = await self._call("POST", "/abort")
        return StatusSnapshot.model_validate(body["data"])

    async def reset_session(self) -> StatusSnapshot:
        body = await self._call("POST", "/reset")
        return StatusSnapshot.model_validate(body["data"])

    async def events(self) -> AsyncIterator[Event]:
        """Follow one event stream until it ends.

        Raises:
            TransportError: If the connection fails or a message is malformed
        """
        try:
            async with self._client.stream(
                "GET", "/events", headers=self._headers(), timeout=httpx.Timeout(None)
            ) as response:
                response.raise_for_status()
                if not response.headers.get("content-type", "").startswith("text/event-stream"):
                    await response.aread()
                    body = response.json()
                    error_cls = ERRORS_BY_NAME.get(body.get("error"), InstallerError)
                    raise error_cls(body.get("msg", "Event subscription refused"))

                name, data = None, []
                async for line in response.aiter_lines():
                    if line.startswith(":"):
                        continue
                    if line == "":
                        if name and data:
                            yield parse_event(name, "\n".join(data))
                        name, data = None, []
                    elif line.startswith("event:"):
                        name = line[len("event:"):].strip()
                    elif line.startswith("data:"):
                        data.append(line[len("data:"):].strip())
        except httpx.HTTPError as e:
            raise TransportError(f"Event stream lost: {e}") from e
        except ValueError as e:
            raise TransportError(f"Malformed event: {e}") from e

    async def watch(self) -> AsyncIterator[Event]:
        """Follow events forever, reconnecting with back-off.

        Every (re)connection starts with a SnapshotEvent the caller should
        redraw from; nothing before it needs replaying.
        """
        delay = self.reconnect_delay
        while True:
            try:
                async for event in self.events():
                    if isinstance(event, SnapshotEvent):
                        delay = self.reconnect_delay
                    yield event
                self.logger.info("Event stream ended, reconnecting")
            except TransportError as e:
                self.logger.warning(f"{e.message}; reconnecting in {delay:.1f}s")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_reconnect_delay)
