"""Global pytest fixtures and configuration."""

import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from installer.config import Settings  # noqa: E402
from installer.models.install_config import InstallConfig  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every runtime path into a temporary directory."""
    return Settings(
        socket_path=str(tmp_path / "run" / "installer.sock"),
        token_path=str(tmp_path / "run" / "session-token"),
        log_file=str(tmp_path / "logs" / "installer.log"),
        history_dir=str(tmp_path / "history"),
        abort_grace_seconds=0.2,
        force_kill_seconds=0.2,
        authorized_uid=1000,
        require_install_mode=False,
        proc_root=str(tmp_path / "proc"),
        sys_root=str(tmp_path / "sys"),
        install_mount=str(tmp_path / "mnt"),
        artifact_directory=str(tmp_path / "images"),
    )


@pytest.fixture
def install_config():
    """Valid StartInstall payload targeting /dev/sda."""
    return InstallConfig(
        target_disk="/dev/sda",
        locale="en_US.UTF-8",
        account={"username": "user", "password": "hunter22"},
        disk_passphrase="correct horse battery",
    )


@pytest.fixture
def fake_system(tmp_path):
    """Fake sysfs/procfs with two disks: sda (free) and sdb (USB stick, mounted read-only).

    Returns a helper that adds extra /proc/mounts lines.
    """
    sys_block = tmp_path / "sys" / "block"
    for name, model, sectors, removable in [
        ("sda", "Samsung SSD 860", 1000215216, "0"),
        ("sdb", "USB Flash Drive", 62521344, "1"),
    ]:
        dev = sys_block / name
        (dev / "device").mkdir(parents=True)
        (dev / "device" / "model").write_text(model + "\n")
        (dev / "size").write_text(f"{sectors}\n")
        (dev / "removable").write_text(removable + "\n")
        (dev / f"{name}1").mkdir()

    # Loop devices have no device/model and must be ignored
    (sys_block / "loop0").mkdir(parents=True)
    (sys_block / "loop0" / "size").write_text("0\n")

    proc = tmp_path / "proc"
    proc.mkdir()
    mounts = proc / "mounts"
    mounts.write_text(
        "proc /proc proc rw,nosuid,nodev,noexec 0 0\n"
        "/dev/sdb1 /run/live/medium iso9660 ro,noatime 0 0\n"
    )
    (proc / "cmdline").write_text("BOOT_IMAGE=/vmlinuz quiet installer.live\n")

    def add_mount(line: str) -> None:
        with open(mounts, "a") as f:
            f.write(line + "\n")

    return add_mount
