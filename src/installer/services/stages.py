"""Default install pipeline: stage catalog and stage parameters."""

import re
from typing import Mapping, Optional, Sequence

from installer.config import Settings
from installer.errors import InvalidConfig
from installer.models.install_config import InstallConfig
from installer.models.session import StageSpec
from installer.services.executor import Command, CommandStage, WriteFile

LUKS_UUID = "683a17fc-4457-42cc-a946-cde67195a101"
VOLUME_GROUP = "installer"
LUKS_NAME = "luks-install"

KERNEL_CMDLINE = "add_efi_memmap quiet splash"

LOADER_CONF = """\
default boot
timeout 5
"""

BOOT_CONF = """\
title Installed system
linux /bzImage
options rd.luks.uuid=$LUKS_UUID root=/dev/mapper/installer-root $KERNEL_CMDLINE
"""

SYSLINUX_CONF = """\
UI menu.c32
PROMPT 0

MENU TITLE Boot installed system
TIMEOUT 50
DEFAULT installed

LABEL installed
    MENU LABEL Installed system
    LINUX ../bzImage
    APPEND rd.luks.uuid=$LUKS_UUID root=/dev/mapper/installer-root $KERNEL_CMDLINE
"""


def _mount_target() -> list:
    """Steps that (re)mount the target root and boot partition.

    Starts by unmounting whatever a failed earlier attempt left behind, so
    stages stay safe to retry.
    """
    return [
        Command("/bin/umount -R $INSTALL_MOUNT", ignore_errors=True, description="Cleaning up mounts"),
        Command("/bin/mkdir -p $INSTALL_MOUNT"),
        Command(f"/bin/mount /dev/mapper/{VOLUME_GROUP}-root $INSTALL_MOUNT", description="Mounting root volume"),
        Command("/bin/mkdir -p $INSTALL_MOUNT/boot"),
        Command("/bin/mount $BOOT_PARTITION $INSTALL_MOUNT/boot", description="Mounting boot partition"),
    ]


def _unmount_target() -> list:
    return [Command("/bin/umount -R $INSTALL_MOUNT", description="Unmounting target")]


def partition_path(device: str, number: int) -> str:
    """Path of partition ``number`` on ``device`` (/dev/sda → /dev/sda1, /dev/nvme0n1 → /dev/nvme0n1p1)."""
    if re.search(r"\d$", device):
        return f"{device}p{number}"
    return f"{device}{number}"


def _stage(name, title, position, steps, skippable=False, retryable=True, condition=None) -> StageSpec:
    return StageSpec(
        name=name,
        title=title,
        position=position,
        skippable=skippable,
        retryable=retryable,
        executor=CommandStage(name, steps, condition=condition),
    )


def default_stages() -> list[StageSpec]:
    """The installer's fixed pipeline, in execution order."""
    return [
        _stage("partition", "Partitioning target disk", 0, [
            Command("/sbin/blkdeactivate $TARGET", ignore_errors=True),
            Command("/sbin/parted -s $TARGET mklabel gpt"),
            Command("/sbin/parted -s $TARGET mkpart boot fat32 1MiB 513MiB"),
            Command("/sbin/parted -s $TARGET set 1 boot on"),
            Command("/sbin/parted -s $TARGET mkpart data ext4 513MiB 100%"),
            Command("/sbin/parted -s $TARGET set 2 lvm on"),
        ]),
        # Re-running luksFormat on a half-set-up volume destroys the header
        _stage("encrypt", "Setting up disk encryption", 1, [
            Command(
                "/sbin/cryptsetup -q --uuid=$LUKS_UUID --key-file=- luksFormat $LUKS_PARTITION",
                stdin="$DISK_PASSPHRASE",
                description="Formatting LUKS volume",
            ),
            Command(
                f"/sbin/cryptsetup open --type luks --key-file=- $LUKS_PARTITION {LUKS_NAME}",
                stdin="$DISK_PASSPHRASE",
                description="Opening LUKS volume",
            ),
        ], retryable=False),
        _stage("volumes", "Setting up LVM volumes", 2, [
            Command(f"/sbin/pvcreate -ff --yes /dev/mapper/{LUKS_NAME}"),
            Command(f"/sbin/vgcreate --yes {VOLUME_GROUP} /dev/mapper/{LUKS_NAME}"),
            Command(f"/sbin/lvcreate --yes --extents 100%VG --name root {VOLUME_GROUP}"),
        ], retryable=False),
        _stage("format", "Creating filesystems", 3, [
            Command("/sbin/mkfs.vfat -F 32 $BOOT_PARTITION"),
            Command(f"/sbin/mkfs.ext4 -F /dev/mapper/{VOLUME_GROUP}-root"),
        ]),
        _stage("install-packages", "Installing system files", 4, [
            *_mount_target(),
            Command(
                "/bin/tar --extract --preserve-permissions --file $ARTIFACT_DIRECTORY/rootfs.tar "
                "--directory $INSTALL_MOUNT",
                description="Unpacking root filesystem",
            ),
            *_unmount_target(),
        ]),
        _stage("bootloader", "Installing bootloader", 5, [
            *_mount_target(),
            Command("/bin/mkdir -p $INSTALL_MOUNT/boot/loader/entries $INSTALL_MOUNT/boot/EFI/BOOT"),
            WriteFile("$INSTALL_MOUNT/boot/loader/loader.conf", LOADER_CONF),
            WriteFile("$INSTALL_MOUNT/boot/loader/entries/boot.conf", BOOT_CONF),
            Command("/bin/cp $ARTIFACT_DIRECTORY/bzImage $INSTALL_MOUNT/boot/bzImage"),
            Command("/bin/cp $ARTIFACT_DIRECTORY/bootx64.efi $INSTALL_MOUNT/boot/EFI/BOOT/BOOTX64.EFI"),
            *_unmount_target(),
        ]),
        _stage("syslinux", "Installing legacy BIOS bootloader", 6, [
            *_mount_target(),
            Command("/bin/mkdir -p $INSTALL_MOUNT/boot/syslinux"),
            Command("/bin/cp -r $ARTIFACT_DIRECTORY/syslinux/. $INSTALL_MOUNT/boot/syslinux"),
            WriteFile("$INSTALL_MOUNT/boot/syslinux/syslinux.cfg", SYSLINUX_CONF),
            Command("/sbin/extlinux --install $INSTALL_MOUNT/boot/syslinux"),
            *_unmount_target(),
            Command(
                "/bin/dd bs=440 count=1 conv=notrunc if=$ARTIFACT_DIRECTORY/syslinux/gptmbr.bin of=$TARGET",
                description="Writing MBR",
            ),
            Command("/sbin/parted -s $TARGET set 1 legacy_boot on"),
        ], skippable=True, condition=lambda params: bool(params.get("install_syslinux"))),
        _stage("accounts", "Creating user account", 7, [
            *_mount_target(),
            Command("/usr/sbin/useradd --root $INSTALL_MOUNT --create-home $USERNAME", ignore_errors=True),
            Command(
                "/usr/sbin/chpasswd --root $INSTALL_MOUNT",
                stdin="$USERNAME:$PASSWORD\n",
                description="Setting account password",
            ),
            WriteFile("$INSTALL_MOUNT/etc/locale.conf", "LANG=$LOCALE\n"),
            *_unmount_target(),
        ]),
        _stage("finish", "Finishing installation", 8, [
            Command("/bin/umount -R $INSTALL_MOUNT", ignore_errors=True),
            Command("/bin/lsblk -o NAME,SIZE,TYPE,FSTYPE $TARGET"),
            Command(f"/sbin/vgchange -an {VOLUME_GROUP}"),
            Command(f"/sbin/cryptsetup close {LUKS_NAME}"),
        ]),
    ]


def select_stages(catalog: Sequence[StageSpec], selection: Optional[Sequence[str]]) -> list[StageSpec]:
    """Fix the session's stage list from the catalog and the config's selection.

    Execution order always follows the catalog. Deselected skippable stages
    stay in the list with ``selected=False`` so they are reported as skipped.

    Raises:
        InvalidConfig: On unknown stage names or a deselected mandatory stage
    """
    if selection is None:
        return list(catalog)

    known = {spec.name for spec in catalog}
    unknown = [name for name in selection if name not in known]
    if unknown:
        raise InvalidConfig(f"Unknown stage(s): {', '.join(unknown)}")

    chosen = set(selection)
    stages = []
    for spec in catalog:
        if spec.name in chosen:
            stages.append(spec)
        elif spec.skippable:
            stages.append(spec.model_copy(update={"selected": False}))
        else:
            raise InvalidConfig(f"Stage '{spec.name}' is required and cannot be skipped")
    return stages


def stage_parameters(config: InstallConfig, settings: Settings) -> Mapping[str, object]:
    """Parameters every stage executor receives. Contains secrets."""
    return {
        **config.parameters(),
        "boot_partition": partition_path(config.target_disk, 1),
        "luks_partition": partition_path(config.target_disk, 2),
        "luks_uuid": LUKS_UUID,
        "kernel_cmdline": KERNEL_CMDLINE,
        "install_mount": settings.install_mount,
        "artifact_directory": settings.artifact_directory,
    }
