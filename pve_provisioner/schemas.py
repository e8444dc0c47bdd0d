import posixpath
import re
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

from pve_provisioner.errors import ValidationError


RESIZE_PATTERN = re.compile(r"^\+[0-9]+[GM]?$")
VM_NAME_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9.-]*[A-Za-z0-9])?$")
IPV4_LIKE = re.compile(r"^[0-9.]+$")


def is_ipv4(value: str) -> bool:
    parts = value.split(".")
    if len(parts) != 4:
        return False
    for part in parts:
        if not part.isdigit() or len(part) > 3 or int(part) > 255:
            return False
    return True


def validate_host(host: str | None) -> str:
    if not host:
        raise ValidationError("--host is required")
    if IPV4_LIKE.match(host) and not is_ipv4(host):
        raise ValidationError(f"Invalid IPv4 address for --host: {host}")
    return host


def validate_user(user: str) -> str:
    if "@" not in user:
        raise ValidationError("Username must contain '@'. Example: root@pam")
    return user


def parse_skip_indexes(raw: str | None) -> frozenset[int]:
    if not raw:
        return frozenset()
    indexes: set[int] = set()
    for token in raw.split(","):
        token = token.strip()
        if not token:
            continue
        if not token.isdigit():
            raise ValidationError(
                f"--skip-bridge-indexes must be comma-separated integers (got: '{raw}')"
            )
        indexes.add(int(token))
    return frozenset(indexes)


class TemplateSpec(BaseModel):
    template_id: int = Field(ge=1)
    name: str = Field(min_length=1)
    cores: int = Field(ge=1)
    memory: int = Field(ge=1)
    nics: int = Field(default=1, ge=1)
    skip_bridge_indexes: frozenset[int] = Field(default_factory=frozenset)
    bridge_base: str = Field(default="vmbr", min_length=1)
    # a fixed bridge replaces the <bridge_base><i> scheme (single-interface appliances)
    bridge: str | None = None
    image_path: str = Field(min_length=1)
    image_dir: str = Field(min_length=1)
    storage: str = Field(min_length=1)
    copy_image: bool = False

    @model_validator(mode="after")
    def _check_interfaces(self) -> "TemplateSpec":
        outside = sorted(i for i in self.skip_bridge_indexes if i < 0 or i >= self.nics)
        if outside:
            raise ValueError(
                f"skip_bridge_indexes {outside} outside of [0, {self.nics})"
            )
        if len(self.skip_bridge_indexes) >= self.nics:
            raise ValueError("skip_bridge_indexes would leave the VM without interfaces")
        if self.bridge and (self.nics != 1 or self.skip_bridge_indexes):
            raise ValueError("a fixed bridge allows exactly one interface")
        return self

    @property
    def image_basename(self) -> str:
        return Path(self.image_path).name

    @property
    def server_image_path(self) -> str:
        return posixpath.join(self.image_dir, self.image_basename)

    @classmethod
    def gateway(cls, **values) -> "TemplateSpec":
        values.pop("bridge", None)
        return cls(**values)

    @classmethod
    def management(cls, *, bridge: str, **values) -> "TemplateSpec":
        values["nics"] = 1
        values.pop("skip_bridge_indexes", None)
        return cls(bridge=bridge, **values)


class ProvisionSpec(BaseModel):
    template_id: int = Field(ge=1)
    name: str
    resize: str
    start_id: int = Field(default=100, ge=1)
    user_data_path: Path
    iso_storage: str = Field(min_length=1)
    disk: str = Field(default="scsi0")

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not VM_NAME_PATTERN.match(value):
            raise ValueError(f"VM name must be a valid DNS name (got: '{value}')")
        return value

    @field_validator("resize")
    @classmethod
    def _check_resize(cls, value: str) -> str:
        if not RESIZE_PATTERN.match(value):
            raise ValueError(
                f"resize must match +<number>[G|M], e.g., +10G (got: '{value}')"
            )
        return value

    @field_validator("user_data_path")
    @classmethod
    def _check_user_data(cls, value: Path) -> Path:
        if not value.is_file():
            raise ValueError(f"user data file does not exist: {value}")
        return value
