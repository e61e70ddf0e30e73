"""Bindings to the external backup tools.

Each engine is an independent class exposing ``name``, ``capabilities``,
``target_url(config)`` and ``stages()``, plus one method per capability it
supports. Engines are picked by name from ``ENGINES``.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Callable, Protocol

from .config import AppConfig
from .errors import (
    BackupStageError,
    ConfigError,
    ContainerRuntimeError,
    DateParseError,
    MissingFieldError,
    Severity,
    error_message,
)
from .metrics import (
    BACKUP_EXIT_CODE,
    LAST_BACKUP,
    LAST_FULL_BACKUP,
    RESTORE_EXIT_CODE,
    VERIFY_EXIT_CODE,
    format_metric,
)
from .models import Capability, OperationInvocation, OperationResult, ResolvedVolume
from .parsing import parse_collection_status
from .runtime import ContainerRuntime

logger = logging.getLogger(__name__)

DUPLICITY_CACHE_MOUNT = "duplicity_cache:/root/.cache/duplicity"
DUPLICITY_COMMON_ARGS = (
    "--s3-use-new-style",
    "--ssh-options",
    "-oStrictHostKeyChecking=no",
    "--no-encryption",
)

_SCHEME_RX = re.compile(r"^([A-Za-z][A-Za-z0-9+.-]*):")


@dataclass(frozen=True)
class PipelineContext:
    runtime: ContainerRuntime
    config: AppConfig


@dataclass(frozen=True)
class PipelineStage:
    name: str
    run: Callable[[], list[str]]


class BackupEngine(Protocol):
    name: str
    capabilities: frozenset[Capability]
    volume: ResolvedVolume

    def stages(self) -> list[PipelineStage]:
        ...


def target_scheme(target: str) -> str:
    match = _SCHEME_RX.match(target)
    return match.group(1).lower() if match else ""


def launch(
    context: PipelineContext,
    *,
    stage: str,
    image: str,
    command: list[str],
    binds: list[str],
    environment: dict[str, str],
) -> OperationResult:
    invocation = OperationInvocation(command=tuple(command), environment=environment, binds=tuple(binds), image=image)
    try:
        return context.runtime.run(invocation)
    except ContainerRuntimeError as error:
        raise BackupStageError(stage=stage, reason=error_message(error), severity=error.severity) from error


class DuplicityEngine:
    name = "duplicity"
    capabilities = frozenset({Capability.BACKUP, Capability.RESTORE, Capability.VERIFY, Capability.STATUS})

    def __init__(self, *, context: PipelineContext, volume: ResolvedVolume) -> None:
        self.context = context
        self.volume = volume

    @staticmethod
    def target_url(config: AppConfig) -> str:
        return config.duplicity.target_url

    def stages(self) -> list[PipelineStage]:
        stages = [
            PipelineStage(name="backup", run=self.backup),
            PipelineStage(name="remove-older-than", run=self.remove_old),
            PipelineStage(name="cleanup", run=self.cleanup),
        ]
        if self.volume.skip_verify:
            logger.info("Skipping verification for volume %s", self.volume.name)
        else:
            stages.append(PipelineStage(name="verify", run=self.verify))
        stages.append(PipelineStage(name="status", run=self.status))
        return stages

    def backup(self) -> list[str]:
        v = self.volume
        logger.debug(
            "Starting backup of volume %s: backup_dir=%s full_if_older_than=%s target=%s mount=%s",
            v.name,
            v.backup_dir,
            v.full_if_older_than,
            v.target,
            v.mount,
        )
        result = self._launch(
            stage="backup",
            command=[
                "--full-if-older-than",
                v.full_if_older_than,
                *DUPLICITY_COMMON_ARGS,
                "--allow-source-mismatch",
                "--name",
                v.name,
                v.backup_dir,
                v.target,
            ],
            binds=[v.mount, DUPLICITY_CACHE_MOUNT],
        )
        return [format_metric(v.name, BACKUP_EXIT_CODE, result.exit_code)]

    def remove_old(self) -> list[str]:
        v = self.volume
        self._launch(
            stage="remove-older-than",
            command=[
                "remove-older-than",
                v.remove_older_than,
                *DUPLICITY_COMMON_ARGS,
                "--force",
                "--name",
                v.name,
                v.target,
            ],
            binds=[DUPLICITY_CACHE_MOUNT],
        )
        return []

    def cleanup(self) -> list[str]:
        v = self.volume
        self._launch(
            stage="cleanup",
            command=[
                "cleanup",
                *DUPLICITY_COMMON_ARGS,
                "--force",
                "--extra-clean",
                "--name",
                v.name,
                v.target,
            ],
            binds=[DUPLICITY_CACHE_MOUNT],
        )
        return []

    def verify(self) -> list[str]:
        v = self.volume
        result = self._launch(
            stage="verify",
            command=[
                "verify",
                *DUPLICITY_COMMON_ARGS,
                "--allow-source-mismatch",
                "--name",
                v.name,
                v.target,
                v.backup_dir,
            ],
            binds=[v.mount, DUPLICITY_CACHE_MOUNT],
        )
        return [format_metric(v.name, VERIFY_EXIT_CODE, result.exit_code)]

    def status(self) -> list[str]:
        v = self.volume
        result = self._launch(
            stage="status",
            command=[
                "collection-status",
                *DUPLICITY_COMMON_ARGS,
                "--name",
                v.name,
                v.target,
            ],
            binds=[v.mount, DUPLICITY_CACHE_MOUNT],
        )

        try:
            collection_status = parse_collection_status(result.output)
        except MissingFieldError as error:
            raise BackupStageError(
                stage="status",
                reason=f"failed to parse duplicity output of {v.name}: {error}",
                severity=Severity.FATAL,
            ) from error
        except DateParseError as error:
            raise BackupStageError(stage="status", reason=str(error), severity=Severity.ERROR) from error

        return [
            format_metric(v.name, LAST_BACKUP, collection_status.chain_end_timestamp),
            format_metric(v.name, LAST_FULL_BACKUP, collection_status.last_full_backup_timestamp),
        ]

    def restore(self) -> list[str]:
        v = self.volume
        result = self._launch(
            stage="restore",
            command=[
                "restore",
                *DUPLICITY_COMMON_ARGS,
                "--force",
                "--name",
                v.name,
                v.target,
                v.backup_dir,
            ],
            binds=[f"{v.name}:{v.volume.mountpoint}", DUPLICITY_CACHE_MOUNT],
        )
        return [format_metric(v.name, RESTORE_EXIT_CODE, result.exit_code)]

    def _launch(self, *, stage: str, command: list[str], binds: list[str]) -> OperationResult:
        return launch(
            self.context,
            stage=stage,
            image=self.context.config.duplicity.image,
            command=command,
            binds=binds,
            environment=self._environment(),
        )

    def _environment(self) -> dict[str, str]:
        config = self.context.config
        scheme = target_scheme(self.volume.target)
        if scheme.startswith("s3"):
            return {
                "AWS_ACCESS_KEY_ID": config.aws.access_key_id,
                "AWS_SECRET_ACCESS_KEY": config.aws.secret_access_key,
            }
        if scheme == "swift":
            return {
                "SWIFT_USERNAME": config.swift.username,
                "SWIFT_PASSWORD": config.swift.password,
                "SWIFT_AUTHURL": config.swift.auth_url,
                "SWIFT_TENANTNAME": config.swift.tenant_name,
                "SWIFT_REGIONNAME": config.swift.region_name,
                "SWIFT_AUTHVERSION": "2",
            }
        return {}


class RCloneEngine:
    """Mirror-only engine: no retention, verification or status support."""

    name = "rclone"
    capabilities = frozenset({Capability.BACKUP})

    def __init__(self, *, context: PipelineContext, volume: ResolvedVolume) -> None:
        self.context = context
        self.volume = volume

    @staticmethod
    def target_url(config: AppConfig) -> str:
        return config.rclone.target_url

    def stages(self) -> list[PipelineStage]:
        return [PipelineStage(name="backup", run=self.backup)]

    def backup(self) -> list[str]:
        v = self.volume
        logger.debug("Starting rclone sync of volume %s: backup_dir=%s target=%s", v.name, v.backup_dir, v.target)
        result = launch(
            self.context,
            stage="backup",
            image=self.context.config.rclone.image,
            command=["sync", "-v", v.backup_dir, v.target],
            binds=[v.mount],
            environment=self._environment(),
        )
        return [format_metric(v.name, BACKUP_EXIT_CODE, result.exit_code)]

    def _environment(self) -> dict[str, str]:
        config = self.context.config
        scheme = target_scheme(self.volume.target)
        if scheme.startswith("s3"):
            return {
                "AWS_ACCESS_KEY_ID": config.aws.access_key_id,
                "AWS_SECRET_ACCESS_KEY": config.aws.secret_access_key,
            }
        if scheme == "swift":
            return {
                "OS_USERNAME": config.swift.username,
                "OS_PASSWORD": config.swift.password,
                "OS_AUTH_URL": config.swift.auth_url,
                "OS_TENANT_NAME": config.swift.tenant_name,
                "OS_REGION_NAME": config.swift.region_name,
            }
        return {}


ENGINES: dict[str, type] = {
    DuplicityEngine.name: DuplicityEngine,
    RCloneEngine.name: RCloneEngine,
}


def get_engine_class(name: str) -> type:
    try:
        return ENGINES[name.strip().lower()]
    except KeyError as error:
        raise ConfigError(f"unsupported engine: {name} (expected one of {', '.join(sorted(ENGINES))})") from error
