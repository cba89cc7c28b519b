"""FastAPI application for the installer back-end."""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import uvicorn

from installer.api.models import ErrorResponse
from installer.api.routes import router
from installer.config import Settings, load_settings
from installer.errors import ConfigError, InstallerError, InvalidConfig
from installer.services.backend import InstallerBackend, build_backend
from installer.utils.logging import setup_logger

SESSION_USER_POLL_SECONDS = 2.0


def is_install_boot(settings: Settings) -> bool:
    """True when the kernel command line marks a live or install boot."""
    cmdline_path = Path(settings.proc_root) / "cmdline"
    try:
        tokens = cmdline_path.read_text().split()
    except OSError:
        return False
    return any(marker in tokens for marker in settings.mode_markers)


async def _watch_session_user(backend: InstallerBackend) -> None:
    """Keep the access token bound to whoever owns the active graphical session."""
    logger = logging.getLogger("installer.auth")
    while True:
        try:
            await backend.guard.refresh_credentials()
        except OSError as e:
            logger.error(f"Failed to refresh access token: {e}")
        await asyncio.sleep(SESSION_USER_POLL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown hooks.

    Startup:
    - Initialize logger
    - Create runtime directories
    - Issue the session access token and keep it bound to the session user

    Shutdown:
    - Abandon (abort) a running install
    - End all event streams and revoke the token
    """
    backend: InstallerBackend = app.state.backend
    settings = backend.settings

    logger = setup_logger("installer", settings.log_file, level=settings.log_level)
    logger.info("Installer back-end starting up...")

    directories = [Path(settings.socket_path).parent, Path(settings.token_path).parent]
    if settings.history_dir:
        directories.append(Path(settings.history_dir))
    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Ensured directory exists: {directory}")

    uid = await backend.guard.refresh_credentials()
    if uid is None:
        logger.warning("No active graphical session yet; waiting for one before accepting commands")
    watcher = asyncio.create_task(_watch_session_user(backend))

    logger.info(f"Installer back-end ready on {settings.socket_path}")

    yield

    logger.info("Installer back-end shutting down...")
    watcher.cancel()
    await asyncio.gather(watcher, return_exceptions=True)
    await backend.orchestrator.shutdown()
    backend.registry.close_all()
    backend.guard.credentials.revoke()


async def installer_error_handler(request: Request, exc: InstallerError) -> JSONResponse:
    body = ErrorResponse(code=exc.code, msg=exc.message, error=exc.error, state=exc.state)
    return JSONResponse(status_code=200, content=body.model_dump())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Only location and message: the raw input may contain passphrases
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
        for err in exc.errors()
    )
    body = ErrorResponse(
        code=InvalidConfig.code,
        msg=f"Invalid install configuration: {problems}",
        error=InvalidConfig.error,
    )
    return JSONResponse(status_code=200, content=body.model_dump())


def create_app(
    settings: Optional[Settings] = None,
    backend: Optional[InstallerBackend] = None,
) -> FastAPI:
    """Build the application around one back-end instance."""
    settings = settings or (backend.settings if backend else Settings())
    app = FastAPI(
        title="Installer Back-end",
        description="Privileged install service for the live/install session",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.backend = backend or build_backend(settings)

    app.add_exception_handler(InstallerError, installer_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "installer-backend", "version": "1.0.0"}

    return app


def main():
    """Main entry point for running the back-end on its Unix socket."""
    try:
        settings = load_settings()
    except ConfigError as e:
        print(f"Installer back-end: {e}", file=sys.stderr)
        sys.exit(2)

    if settings.require_install_mode and not is_install_boot(settings):
        print("Installer back-end only runs in live or install mode", file=sys.stderr)
        sys.exit(1)

    socket_path = Path(settings.socket_path)
    socket_path.parent.mkdir(parents=True, exist_ok=True)
    # A stale socket from a previous run would make bind() fail
    socket_path.unlink(missing_ok=True)

    uvicorn.run(
        create_app(settings),
        uds=str(socket_path),
        log_level=settings.log_level.lower(),
        access_log=True,
    )


if __name__ == "__main__":
    main()
