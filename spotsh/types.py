"""Core data types shared across spotsh."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class OperatingSystem(Enum):
    """Operating systems spotsh knows how to launch."""

    NONE = ""
    UBUNTU22_04 = "ubuntu22.04"
    AMZN2 = "amzn2"
    AMZN2023 = "amzn2023"
    AMZN2023_MIN = "amzn2023min"
    DEBIAN12 = "debian12"
    UBUNTU24_04 = "ubuntu24.04"

    INVALID = "invalid"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_string(cls, value: str | None) -> OperatingSystem:
        """Map a string back to its enum value; unknown strings become INVALID."""
        if value is None:
            return cls.NONE
        try:
            return cls(value)
        except ValueError:
            return cls.INVALID

    @classmethod
    def launchable(cls) -> list[OperatingSystem]:
        """Every launchable OS, in declaration order."""
        return [os_ for os_ in cls if os_ not in (cls.NONE, cls.INVALID)]

    @property
    def is_launchable(self) -> bool:
        return self not in (OperatingSystem.NONE, OperatingSystem.INVALID)


@dataclass
class LaunchSpec:
    """Everything a caller may pin when launching. Unset fields get defaults.

    ``image_id``/``image_name`` and ``os`` are mutually exclusive; when an
    image is given directly, ``user`` is required because it cannot be
    inferred from the image.
    """

    os: OperatingSystem = OperatingSystem.NONE
    image_id: str = ""
    image_name: str = ""
    key_name: str = ""
    security_group_id: str = ""
    role_name: str = ""
    init_cmd: str = ""
    instance_types: list[str] = field(default_factory=list)
    max_spot_price: str = ""
    user: str = ""
    root_volume_size: int = 0


@dataclass
class InstanceRecord:
    """A running (or just launched) spotsh instance."""

    instance_id: str
    public_ip: str = ""
    user: str = ""
    local_key_file: str = ""
    instance_type: str = ""
    image_id: str = ""
    current_price: float = 0.0
    az_name: str = ""
    dns_name: str = ""
    os: OperatingSystem = OperatingSystem.NONE
    security_group_id: str = ""
    region: str = ""

    @property
    def usable(self) -> bool:
        """True once there is both an address and a key to connect with."""
        return bool(self.public_ip) and bool(self.local_key_file)

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.public_ip}"
