"""Persisted launch preferences."""

from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path

from spotsh.exceptions import ValidationError
from spotsh.types import LaunchSpec, OperatingSystem

CONFIG_DIR_ENV = "SPOTSH_CONFIG_DIR"
PREFS_FILE_NAME = "prefs.json"


def config_dir() -> Path:
    """Directory holding preferences, VPN scripts and WireGuard keys."""
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override)
    return Path.home() / ".config" / "spotsh"


def prefs_path() -> Path:
    return config_dir() / PREFS_FILE_NAME


def _is_str(value: object) -> bool:
    return isinstance(value, str)


def _is_str_list(value: object) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# fields not listed here hold strings
_FIELD_CHECKS = {
    "instance_types": (_is_str_list, "a list of strings"),
    "root_volume_size": (_is_int, "an integer"),
}


@dataclass
class Preferences:
    """Defaults applied to every launch. Empty values mean "use spotsh's default"."""

    os: str = ""
    instance_types: list[str] = field(default_factory=list)
    security_group_id: str = ""
    max_spot_price: str = ""
    role_name: str = ""
    init_cmd: str = ""
    root_volume_size: int = 0
    key_name: str = ""

    @classmethod
    def load(cls, path: Path | None = None) -> Preferences:
        """Read preferences from disk; a missing file yields the defaults.

        Keys this version doesn't know are ignored.
        """
        path = path or prefs_path()
        if not path.exists():
            return cls()
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ValidationError(f"Could not parse preferences file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError(f"Preferences file {path} must hold a JSON object")
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for name, value in values.items():
            check, expected = _FIELD_CHECKS.get(name, (_is_str, "a string"))
            if not check(value):
                raise ValidationError(
                    f"Preferences file {path}: {name} must be {expected}, got {value!r}"
                )
        return cls(**values)

    def save(self, path: Path | None = None) -> Path:
        """Write preferences to disk, readable by the owner only."""
        path = path or prefs_path()
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        content = json.dumps(asdict(self), indent=2)
        fd = os.open(
            str(path),
            os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
            stat.S_IRUSR | stat.S_IWUSR,
        )
        with os.fdopen(fd, "w") as f:
            f.write(content)
        return path

    @property
    def operating_system(self) -> OperatingSystem:
        return OperatingSystem.from_string(self.os or None)

    def to_launch_spec(self) -> LaunchSpec:
        return LaunchSpec(
            os=self.operating_system,
            key_name=self.key_name,
            security_group_id=self.security_group_id,
            role_name=self.role_name,
            init_cmd=self.init_cmd,
            instance_types=list(self.instance_types),
            max_spot_price=self.max_spot_price,
            root_volume_size=self.root_volume_size,
        )
