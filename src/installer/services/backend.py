"""Wiring of the back-end components for one service process."""

import functools
from dataclasses import dataclass
from typing import Optional, Sequence

from installer.config import Settings
from installer.models.session import StageSpec
from installer.services.auth_guard import AuthorizationGuard, CredentialStore, SessionProbe
from installer.services.disks import DiskProbe, TargetValidator
from installer.services.history import HistoryStore
from installer.services.orchestrator import InstallOrchestrator
from installer.services.registry import SessionRegistry
from installer.services.stages import default_stages, stage_parameters


@dataclass
class InstallerBackend:
    """Everything the transport needs, owned by the application instance."""

    settings: Settings
    orchestrator: InstallOrchestrator
    registry: SessionRegistry
    guard: AuthorizationGuard
    disks: DiskProbe


def build_backend(
    settings: Settings,
    stages: Optional[Sequence[StageSpec]] = None,
    guard: Optional[AuthorizationGuard] = None,
    disks: Optional[DiskProbe] = None,
) -> InstallerBackend:
    """Create the orchestrator, registry and guard and connect them.

    Args:
        settings: Service settings
        stages: Stage pipeline (default: the built-in catalog)
        guard: Authorization guard (default: logind-backed guard)
        disks: Disk probe (default: reads settings.sys_root/proc_root)
    """
    disks = disks or DiskProbe(sys_root=settings.sys_root, proc_root=settings.proc_root)
    guard = guard or AuthorizationGuard(
        SessionProbe(seat=settings.seat, pinned_uid=settings.authorized_uid),
        CredentialStore(settings.token_path),
        allow_unauthorized_queries=settings.allow_unauthorized_queries,
    )

    orchestrator = InstallOrchestrator(
        catalog=stages if stages is not None else default_stages(),
        parameters=functools.partial(stage_parameters, settings=settings),
        validate=TargetValidator(disks).validate,
        history=HistoryStore(settings.history_dir),
        abort_grace_seconds=settings.abort_grace_seconds,
        force_kill_seconds=settings.force_kill_seconds,
        auto_begin=settings.auto_begin,
    )
    registry = SessionRegistry(orchestrator.snapshot, queue_size=settings.subscriber_queue_size)
    orchestrator.subscribe(registry.broadcast)

    return InstallerBackend(
        settings=settings,
        orchestrator=orchestrator,
        registry=registry,
        guard=guard,
        disks=disks,
    )
