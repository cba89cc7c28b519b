"""Disk discovery and target validation."""

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from installer.errors import InvalidConfig
from installer.models.install_config import InstallConfig


class MountInfo(BaseModel):
    """One entry of /proc/mounts."""

    device: str
    mountpoint: str
    fstype: str
    read_only: bool


class Disk(BaseModel):
    """A candidate install target."""

    path: str = Field(..., description="Device node, e.g. /dev/sda")
    model: str
    size: int = Field(..., ge=0, description="Size in bytes")
    size_str: str = Field(..., description="Size in GiB, e.g. '476G'")
    removable: bool
    mounts: list[MountInfo] = Field(default_factory=list)

    @property
    def mounted(self) -> bool:
        return bool(self.mounts)


class DiskProbe:
    """Reads block devices from sysfs and mounts from procfs."""

    def __init__(self, sys_root: str = "/sys", proc_root: str = "/proc"):
        self.logger = logging.getLogger("installer.disks")
        self.sys_root = Path(sys_root)
        self.proc_root = Path(proc_root)

    def probe_all(self) -> list[Disk]:
        """List disk devices (entries of /sys/block that have a device model).

        Returns:
            Disks sorted by device path
        """
        block_dir = self.sys_root / "block"
        if not block_dir.is_dir():
            self.logger.warning(f"{block_dir} not found, no disks reported")
            return []

        mounts = self.read_mounts()
        disks = []
        for entry in sorted(block_dir.iterdir()):
            if not (entry / "device" / "model").exists():
                continue
            try:
                disks.append(self._read_device(entry, mounts))
            except (OSError, ValueError) as e:
                self.logger.warning(f"Skipping {entry.name}: {e}")
        return disks

    def find(self, path: str) -> Optional[Disk]:
        """Look up a disk by device path, following symlinks such as /dev/disk/by-id/*."""
        candidates = {path, os.path.realpath(path)}
        for disk in self.probe_all():
            if disk.path in candidates:
                return disk
        return None

    def read_mounts(self) -> list[MountInfo]:
        mounts_file = self.proc_root / "mounts"
        try:
            lines = mounts_file.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            self.logger.warning(f"Cannot read {mounts_file}: {e}")
            return []

        mounts = []
        for line in lines:
            fields = line.split()
            if len(fields) < 4:
                continue
            options = fields[3].split(",")
            mounts.append(
                MountInfo(
                    device=fields[0],
                    # /proc/mounts escapes spaces as \040
                    mountpoint=fields[1].replace("\\040", " "),
                    fstype=fields[2],
                    read_only="ro" in options,
                )
            )
        return mounts

    def _read_device(self, entry: Path, mounts: list[MountInfo]) -> Disk:
        name = entry.name
        path = f"/dev/{name}"
        # sysfs reports size in 512-byte sectors
        sectors = int((entry / "size").read_text().strip())
        size = sectors * 512
        model = (entry / "device" / "model").read_text().strip()

        removable = False
        removable_file = entry / "removable"
        if removable_file.exists():
            removable = removable_file.read_text().strip() == "1"

        partition_dirs = [p for p in entry.iterdir() if p.name.startswith(name)]
        devices = {path} | {f"/dev/{p.name}" for p in partition_dirs}
        # LUKS and LVM volumes stacked on the disk count as the disk being in use
        for holder in self._holders([entry, *partition_dirs]):
            devices.add(f"/dev/{holder}")
            dm_name = self.sys_root / "block" / holder / "dm" / "name"
            if dm_name.exists():
                devices.add(f"/dev/mapper/{dm_name.read_text().strip()}")
        disk_mounts = [m for m in mounts if m.device in devices]

        return Disk(
            path=path,
            model=model,
            size=size,
            size_str=f"{sectors >> 21}G",
            removable=removable,
            mounts=disk_mounts,
        )

    def _holders(self, device_dirs: list[Path]) -> set[str]:
        """Names of device-mapper devices built on top of ``device_dirs``, transitively."""
        found: set[str] = set()
        pending = list(device_dirs)
        while pending:
            holders_dir = pending.pop() / "holders"
            if not holders_dir.is_dir():
                continue
            for holder in holders_dir.iterdir():
                if holder.name in found:
                    continue
                found.add(holder.name)
                pending.append(self.sys_root / "block" / holder.name)
        return found


class TargetValidator:
    """Semantic checks on StartInstall parameters beyond the request schema."""

    def __init__(self, probe: DiskProbe):
        self.probe = probe

    def validate(self, config: InstallConfig) -> Disk:
        """Check the target disk exists and nothing on it is mounted.

        Returns:
            The resolved disk; its path is canonical even when the config
            names a symlink such as /dev/disk/by-id/*

        Raises:
            InvalidConfig: With a message suitable for display
        """
        disk = self.probe.find(config.target_disk)
        if disk is None:
            raise InvalidConfig(f"Target disk {config.target_disk} is not an available disk")

        if disk.mounted:
            mount = disk.mounts[0]
            mode = "read-only" if mount.read_only else "read-write"
            raise InvalidConfig(
                f"Target disk {config.target_disk} is in use: "
                f"{mount.device} is mounted {mode} at {mount.mountpoint}"
            )
        return disk
