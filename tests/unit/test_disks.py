"""Unit tests for disk discovery and target validation."""

from pathlib import Path
from unittest.mock import patch

import pytest

from installer.errors import InvalidConfig
from installer.services.disks import DiskProbe, TargetValidator


@pytest.fixture
def probe(settings, fake_system):
    return DiskProbe(sys_root=settings.sys_root, proc_root=settings.proc_root)


@pytest.mark.unit
class TestDiskProbe:
    """sysfs/procfs parsing."""

    def test_probe_all_lists_disks_with_model(self, probe):
        disks = probe.probe_all()

        assert [d.path for d in disks] == ["/dev/sda", "/dev/sdb"]
        sda = disks[0]
        assert sda.model == "Samsung SSD 860"
        assert sda.size == 1000215216 * 512
        assert sda.size_str == "476G"
        assert sda.removable is False
        assert sda.mounted is False

    def test_partition_mounts_are_attributed(self, probe):
        sdb = probe.find("/dev/sdb")

        assert sdb.removable is True
        assert sdb.mounted
        assert sdb.mounts[0].device == "/dev/sdb1"
        assert sdb.mounts[0].mountpoint == "/run/live/medium"
        assert sdb.mounts[0].read_only is True

    def test_find_unknown(self, probe):
        assert probe.find("/dev/sdz") is None

    def test_mountpoint_escapes(self, probe, fake_system):
        fake_system("/dev/sda1 /media/My\\040Disk ext4 rw,relatime 0 0")

        mount = probe.find("/dev/sda").mounts[0]

        assert mount.mountpoint == "/media/My Disk"
        assert mount.read_only is False

    def test_missing_sysfs(self, tmp_path):
        probe = DiskProbe(sys_root=str(tmp_path / "nowhere"), proc_root=str(tmp_path / "nowhere"))
        assert probe.probe_all() == []
        assert probe.read_mounts() == []


@pytest.mark.unit
class TestTargetValidator:
    """Semantic checks on the install target."""

    def test_free_disk_is_valid(self, probe, install_config):
        TargetValidator(probe).validate(install_config)

    def test_unknown_disk_is_invalid(self, probe, install_config):
        config = install_config.model_copy(update={"target_disk": "/dev/sdz"})

        with pytest.raises(InvalidConfig) as exc_info:
            TargetValidator(probe).validate(config)

        assert "not an available disk" in exc_info.value.message

    def test_read_only_mounted_disk_is_invalid(self, probe, install_config):
        """Even a read-only mount on the target refuses the install."""
        config = install_config.model_copy(update={"target_disk": "/dev/sdb"})

        with pytest.raises(InvalidConfig) as exc_info:
            TargetValidator(probe).validate(config)

        assert exc_info.value.message == (
            "Target disk /dev/sdb is in use: /dev/sdb1 is mounted read-only at /run/live/medium"
        )

    def test_read_write_mounted_disk_is_invalid(self, probe, install_config, fake_system):
        fake_system("/dev/sda /mnt ext4 rw 0 0")

        with pytest.raises(InvalidConfig) as exc_info:
            TargetValidator(probe).validate(install_config)

        assert "read-write" in exc_info.value.message

    def test_mapper_volume_on_partition_marks_disk_mounted(
        self, probe, settings, install_config, fake_system
    ):
        """A mount of an LVM volume inside a LUKS container on sda2 is a mount of sda."""
        sys_block = Path(settings.sys_root) / "block"
        (sys_block / "sda" / "sda2" / "holders" / "dm-0").mkdir(parents=True)
        (sys_block / "dm-0" / "dm").mkdir(parents=True)
        (sys_block / "dm-0" / "dm" / "name").write_text("luks-install\n")
        (sys_block / "dm-0" / "holders" / "dm-1").mkdir(parents=True)
        (sys_block / "dm-1" / "dm").mkdir(parents=True)
        (sys_block / "dm-1" / "dm" / "name").write_text("installer-root\n")
        fake_system("/dev/mapper/installer-root /run/installer/mnt ext4 rw 0 0")

        with pytest.raises(InvalidConfig) as exc_info:
            TargetValidator(probe).validate(install_config)

        assert exc_info.value.message == (
            "Target disk /dev/sda is in use: "
            "/dev/mapper/installer-root is mounted read-write at /run/installer/mnt"
        )

    def test_mapper_node_by_kernel_name(self, probe, settings, fake_system):
        sys_block = Path(settings.sys_root) / "block"
        (sys_block / "sda" / "sda1" / "holders" / "dm-3").mkdir(parents=True)
        fake_system("/dev/dm-3 /srv ext4 ro 0 0")

        assert probe.find("/dev/sda").mounts[0].device == "/dev/dm-3"

    def test_by_id_target_resolves_to_disk(self, probe, install_config):
        by_id = "/dev/disk/by-id/ata-Samsung_SSD_860_S3Z9NB0K123456"
        config = install_config.model_copy(update={"target_disk": by_id})

        with patch("installer.services.disks.os.path.realpath", return_value="/dev/sda"):
            disk = TargetValidator(probe).validate(config)

        assert disk.path == "/dev/sda"
        assert disk.model == "Samsung SSD 860"
