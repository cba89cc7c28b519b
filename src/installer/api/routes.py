"""Bus endpoints: commands, queries and the event stream."""

import asyncio
import uuid
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from installer.api.models import CommandResponse, DisksResponse, StatusResponse
from installer.models.events import Event
from installer.models.install_config import InstallConfig
from installer.services.auth_guard import ConnectionIdentity, Verdict
from installer.services.backend import InstallerBackend
from installer.services.registry import SessionRegistry

router = APIRouter(prefix="/api/v1.0")

# Over the Unix socket uvicorn reports no client address at all
LOCAL_PEERS = {"127.0.0.1", "::1"}


def get_backend(request: Request) -> InstallerBackend:
    return request.app.state.backend


def get_identity(request: Request) -> ConnectionIdentity:
    """Describe the caller: locality, presented token, connection id."""
    peer = request.client.host if request.client else None
    token = None
    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        token = credentials.strip()

    return ConnectionIdentity(
        connection_id=request.headers.get("x-connection-id") or f"request-{uuid.uuid4().hex[:8]}",
        local=peer is None or peer in LOCAL_PEERS,
        token=token,
        peer=peer,
    )


@router.get("/status", response_model=StatusResponse)
async def get_status(
    backend: InstallerBackend = Depends(get_backend),
    identity: ConnectionIdentity = Depends(get_identity),
):
    """GET /api/v1.0/status - Current install session snapshot."""
    await backend.guard.require_query(identity, "query status")
    return StatusResponse(data=backend.orchestrator.snapshot())


@router.get("/disks", response_model=DisksResponse)
async def get_disks(
    backend: InstallerBackend = Depends(get_backend),
    identity: ConnectionIdentity = Depends(get_identity),
):
    """GET /api/v1.0/disks - Candidate install targets."""
    await backend.guard.require_query(identity, "list disks")
    return DisksResponse(data=backend.disks.probe_all())


@router.post("/install", response_model=CommandResponse)
async def post_install(
    config: InstallConfig,
    backend: InstallerBackend = Depends(get_backend),
    identity: ConnectionIdentity = Depends(get_identity),
):
    """POST /api/v1.0/install - StartInstall.

    Errors (HTTP 200, code field):
        403 Forbidden, 400 InvalidConfig, 409 SessionActive / SessionAlreadyTerminal
    """
    await backend.guard.require(identity, "start the installation")
    snapshot = await backend.orchestrator.start_install(config)
    return CommandResponse(data=snapshot)


@router.post("/begin", response_model=CommandResponse)
async def post_begin(
    backend: InstallerBackend = Depends(get_backend),
    identity: ConnectionIdentity = Depends(get_identity),
):
    """POST /api/v1.0/begin - Run a configured session (when auto_begin is off)."""
    await backend.guard.require(identity, "begin the installation")
    return CommandResponse(data=await backend.orchestrator.begin())


@router.post("/retry", response_model=CommandResponse)
async def post_retry(
    backend: InstallerBackend = Depends(get_backend),
    identity: ConnectionIdentity = Depends(get_identity),
):
    """POST /api/v1.0/retry - Re-run the paused stage."""
    await backend.guard.require(identity, "retry the failed step")
    return CommandResponse(data=await backend.orchestrator.retry())


@router.post("/abort", response_model=CommandResponse)
async def post_abort(
    backend: InstallerBackend = Depends(get_backend),
    identity: ConnectionIdentity = Depends(get_identity),
):
    """POST /api/v1.0/abort - Abort the installation.

    Returns once the session is aborted, which can take up to the
    configured grace period while a stage shuts down.
    """
    await backend.guard.require(identity, "abort the installation")
    return CommandResponse(data=await backend.orchestrator.abort())


@router.post("/reset", response_model=CommandResponse)
async def post_reset(
    backend: InstallerBackend = Depends(get_backend),
    identity: ConnectionIdentity = Depends(get_identity),
):
    """POST /api/v1.0/reset - Archive a finished session."""
    await backend.guard.require(identity, "reset the installation")
    return CommandResponse(data=await backend.orchestrator.reset_session())


@router.get("/events")
async def stream_events(
    request: Request,
    backend: InstallerBackend = Depends(get_backend),
    identity: ConnectionIdentity = Depends(get_identity),
):
    """GET /api/v1.0/events - Server-Sent Events stream.

    The first event is always a Snapshot; afterwards every broadcast event
    is delivered in generation order. The stream ends if the connection
    falls too far behind; the client reconnects and resyncs.
    """
    verdict = await backend.guard.require_query(identity, "subscribe to events")
    connection_id = uuid.uuid4().hex
    return StreamingResponse(
        _event_stream(request, backend.registry, verdict, connection_id, backend.settings.keepalive_seconds),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Connection-Id": connection_id},
    )


def format_sse(event: Event) -> str:
    return f"event: {event.name}\nid: {event.seq}\ndata: {event.model_dump_json()}\n\n"


async def _event_stream(
    request: Request,
    registry: SessionRegistry,
    verdict: Verdict,
    connection_id: str,
    keepalive: float,
) -> AsyncIterator[str]:
    # Registered only once the body starts, so a client gone before then leaves nothing behind
    subscriber, snapshot = registry.attach(verdict, connection_id)
    try:
        yield format_sse(snapshot)
        while True:
            try:
                event = await subscriber.next_event(timeout=keepalive)
            except asyncio.TimeoutError:
                if await request.is_disconnected():
                    break
                yield ": keepalive\n\n"
                continue
            if event is None:
                break
            yield format_sse(event)
    finally:
        registry.detach(connection_id)
