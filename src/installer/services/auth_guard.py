"""Authorization of front-end callers.

Trust is local and session-bound: a caller is authorized when it reaches the
service over the local socket, presents the access token issued for the
current graphical session user, and that user still owns the active session
on the seat.
"""

import asyncio
import hmac
import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from installer.errors import Forbidden


@dataclass(frozen=True)
class ConnectionIdentity:
    """What the transport knows about a caller."""

    connection_id: str
    local: bool
    token: Optional[str] = None
    peer: Optional[str] = None


@dataclass(frozen=True)
class Verdict:
    allowed: bool
    reason: str


class SessionProbe:
    """Finds the uid owning the active graphical session via systemd-logind."""

    def __init__(self, seat: str = "seat0", pinned_uid: Optional[int] = None):
        self.logger = logging.getLogger("installer.auth")
        self.seat = seat
        self.pinned_uid = pinned_uid

    async def active_uid(self) -> Optional[int]:
        """Return the uid of the active session on the seat, or None if there is none."""
        if self.pinned_uid is not None:
            return self.pinned_uid

        session = await self._loginctl("show-seat", self.seat, "--property=ActiveSession", "--value")
        if not session:
            return None
        user = await self._loginctl("show-session", session, "--property=User", "--value")
        if not user:
            return None
        try:
            return int(user)
        except ValueError:
            self.logger.warning(f"Unexpected loginctl user value: {user!r}")
            return None

    async def _loginctl(self, *args: str) -> Optional[str]:
        try:
            process = await asyncio.create_subprocess_exec(
                "loginctl",
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            self.logger.error(f"Failed to run loginctl: {e}")
            return None

        if process.returncode != 0:
            self.logger.warning(
                f"loginctl {' '.join(args)} failed: exit code {process.returncode}, "
                f"stderr: {stderr.decode(errors='replace').strip()}"
            )
            return None
        return stdout.decode().strip() or None


class CredentialStore:
    """Issues the per-boot access token and hands it to the session user.

    The token file is created 0600 and, when running as root, chowned to the
    session user so only that user's processes can read it.
    """

    def __init__(self, token_path: str):
        self.logger = logging.getLogger("installer.auth")
        self.token_path = Path(token_path)
        self._token: Optional[str] = None
        self._owner_uid: Optional[int] = None

    @property
    def owner_uid(self) -> Optional[int]:
        return self._owner_uid

    def issue(self, uid: int) -> str:
        """Generate a fresh token for ``uid``; any previous token stops working."""
        token = secrets.token_urlsafe(32)
        self.token_path.parent.mkdir(parents=True, exist_ok=True)
        self.token_path.unlink(missing_ok=True)
        fd = os.open(self.token_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(token)
        if os.geteuid() == 0 and uid != 0:
            os.chown(self.token_path, uid, -1)

        self._token = token
        self._owner_uid = uid
        self.logger.info(f"Issued access token for uid {uid} at {self.token_path}")
        return token

    def revoke(self) -> None:
        self._token = None
        self._owner_uid = None
        self.token_path.unlink(missing_ok=True)

    def matches(self, token: Optional[str]) -> bool:
        if self._token is None or not token:
            return False
        return hmac.compare_digest(self._token, token)


class AuthorizationGuard:
    """Computes verdicts; stores nothing about callers."""

    def __init__(
        self,
        probe: SessionProbe,
        credentials: CredentialStore,
        allow_unauthorized_queries: bool = True,
    ):
        self.logger = logging.getLogger("installer.auth")
        self.probe = probe
        self.credentials = credentials
        self.allow_unauthorized_queries = allow_unauthorized_queries

    async def refresh_credentials(self) -> Optional[int]:
        """Make sure the token belongs to the current session user.

        Issues a token when a session user appears and re-issues it when the
        active user changes. Returns the uid holding the token, if any.
        """
        uid = await self.probe.active_uid()
        if uid is None:
            return self.credentials.owner_uid
        if uid != self.credentials.owner_uid:
            self.credentials.issue(uid)
        return uid

    async def authorize(self, identity: ConnectionIdentity) -> Verdict:
        if not identity.local:
            return Verdict(False, f"Remote caller {identity.peer} is not accepted")
        if not self.credentials.matches(identity.token):
            return Verdict(False, "Missing or invalid access token")

        active_uid = await self.probe.active_uid()
        if active_uid is None:
            return Verdict(False, "No active graphical session on this machine")
        if active_uid != self.credentials.owner_uid:
            return Verdict(False, "Caller is not the user of the active graphical session")
        return Verdict(True, "ok")

    async def require(self, identity: ConnectionIdentity, command: str) -> Verdict:
        """Authorize a mutating command.

        Raises:
            Forbidden: If the verdict is negative
        """
        verdict = await self.authorize(identity)
        if not verdict.allowed:
            self.logger.warning(
                f"Rejected {command} from connection {identity.connection_id}: {verdict.reason}"
            )
            raise Forbidden(f"Not authorized to {command}: {verdict.reason}")
        return verdict

    async def require_query(self, identity: ConnectionIdentity, query: str) -> Verdict:
        """Authorize a read-only query under the unauthorized-query policy.

        Raises:
            Forbidden: If the verdict is negative and the policy denies queries
        """
        verdict = await self.authorize(identity)
        if verdict.allowed or self.allow_unauthorized_queries:
            return verdict
        self.logger.info(f"Rejected {query} from connection {identity.connection_id}: {verdict.reason}")
        raise Forbidden(f"Not authorized to {query}: {verdict.reason}")
