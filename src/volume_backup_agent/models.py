from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class Capability(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"
    VERIFY = "verify"
    STATUS = "status"


@dataclass(frozen=True)
class Volume:
    name: str
    driver: str
    mountpoint: str
    labels: Mapping[str, str] = field(default_factory=dict)

    def label(self, key: str) -> str:
        value = self.labels.get(key)
        return value.strip() if isinstance(value, str) else ""


@dataclass(frozen=True)
class ResolvedVolume:
    """Effective parameters of one pipeline run for one volume."""

    volume: Volume
    target: str
    backup_dir: str
    mount: str
    full_if_older_than: str
    remove_older_than: str
    skip_verify: bool = False

    @property
    def name(self) -> str:
        return self.volume.name


@dataclass(frozen=True)
class OperationInvocation:
    command: tuple[str, ...]
    environment: Mapping[str, str]
    binds: tuple[str, ...]
    image: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "command", tuple(self.command))
        object.__setattr__(self, "binds", tuple(self.binds))
        object.__setattr__(self, "environment", MappingProxyType(dict(self.environment)))

    def environment_list(self) -> list[str]:
        return [f"{key}={value}" for key, value in self.environment.items()]


@dataclass(frozen=True)
class OperationResult:
    exit_code: int
    output: str = ""
