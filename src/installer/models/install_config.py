"""Install configuration submitted with StartInstall."""

from typing import Optional

from pydantic import BaseModel, Field, SecretStr, field_validator


class AccountConfig(BaseModel):
    """Initial user account created on the target system."""

    username: str = Field(
        ...,
        pattern=r"^[a-z_][a-z0-9_-]{0,31}$",
        description="POSIX user name",
        examples=["user"],
    )
    password: SecretStr = Field(
        ..., min_length=1, description="Account password (never echoed back)"
    )


class InstallConfig(BaseModel):
    """POST /api/v1.0/install payload.

    Example:
        {
            "target_disk": "/dev/sda",
            "locale": "en_US.UTF-8",
            "account": {"username": "user", "password": "secret"},
            "disk_passphrase": "correct horse battery",
            "stages": null,
            "install_syslinux": true
        }
    """

    target_disk: str = Field(
        ...,
        pattern=r"^/dev/[A-Za-z0-9/_.:-]+$",
        description="Block device to install onto",
        examples=["/dev/sda", "/dev/nvme0n1"],
    )
    locale: str = Field(
        default="en_US.UTF-8",
        pattern=r"^[a-z]{2,3}_[A-Z]{2}(\.UTF-8)?$",
        description="System locale",
    )
    account: AccountConfig
    disk_passphrase: SecretStr = Field(
        ..., min_length=8, description="LUKS passphrase for the encrypted volume"
    )
    stages: Optional[list[str]] = Field(
        None,
        description="Ordered stage selection; omitted stages must be skippable (default: all)",
    )
    install_syslinux: bool = Field(
        default=True, description="Install the legacy BIOS bootloader as well"
    )

    @field_validator("stages")
    @classmethod
    def unique_stages(cls, v):
        """Reject duplicate stage names."""
        if v is not None and len(set(v)) != len(v):
            raise ValueError("stage selection contains duplicates")
        return v

    def parameters(self) -> dict:
        """Flatten into the parameter mapping handed to stage executors.

        Contains plain-text secrets; never log or broadcast the result.
        """
        return {
            "target": self.target_disk,
            "locale": self.locale,
            "username": self.account.username,
            "password": self.account.password.get_secret_value(),
            "disk_passphrase": self.disk_passphrase.get_secret_value(),
            "install_syslinux": self.install_syslinux,
        }
