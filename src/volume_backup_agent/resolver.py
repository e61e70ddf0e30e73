from __future__ import annotations

import logging
from typing import Iterable

from .config import AppConfig
from .errors import ConfigError
from .models import ResolvedVolume, Volume

logger = logging.getLogger(__name__)

FULL_IF_OLDER_THAN_LABEL = "full_if_older_than"
REMOVE_OLDER_THAN_LABEL = "remove_older_than"
NO_VERIFY_LABEL = "no_verify"
BACKUP_DIR_LABEL = "backup_dir"
IGNORE_LABEL = "ignore"

# Swift pseudo-folders do not survive nested paths in duplicity targets.
FLAT_PATH_SCHEMES = ("swift://",)


def label_key(config: AppConfig, suffix: str) -> str:
    return f"{config.label_prefix}.{suffix}"


def volume_label(volume: Volume, config: AppConfig, suffix: str) -> str:
    return volume.label(label_key(config, suffix))


def target_for(target_url: str, hostname: str, volume_name: str) -> str:
    separator = "_" if target_url.startswith(FLAT_PATH_SCHEMES) else "/"
    return f"{target_url}{separator}{hostname}{separator}{volume_name}"


def resolve_volume(volume: Volume, config: AppConfig, *, target_url: str) -> ResolvedVolume:
    full_if_older_than = (
        volume_label(volume, config, FULL_IF_OLDER_THAN_LABEL) or config.duplicity.full_if_older_than
    )
    remove_older_than = (
        volume_label(volume, config, REMOVE_OLDER_THAN_LABEL) or config.duplicity.remove_older_than
    )
    if not full_if_older_than.strip():
        raise ConfigError(
            f"no full_if_older_than threshold for volume {volume.name} (duplicity.full_if_older_than is empty)"
        )
    if not remove_older_than.strip():
        raise ConfigError(
            f"no remove_older_than threshold for volume {volume.name} (duplicity.remove_older_than is empty)"
        )
    if not target_url.strip():
        raise ConfigError(f"no target URL configured for volume {volume.name}")
    skip_verify = config.no_verify or volume_label(volume, config, NO_VERIFY_LABEL) == "true"
    backup_dir = volume_label(volume, config, BACKUP_DIR_LABEL)

    resolved = ResolvedVolume(
        volume=volume,
        target=target_for(target_url, config.hostname, volume.name),
        backup_dir=f"{volume.mountpoint}/{backup_dir}",
        mount=f"{volume.name}:{volume.mountpoint}:ro",
        full_if_older_than=full_if_older_than,
        remove_older_than=remove_older_than,
        skip_verify=skip_verify,
    )
    logger.debug(
        "Resolved volume %s: target=%s backup_dir=%s full_if_older_than=%s remove_older_than=%s skip_verify=%s",
        volume.name,
        resolved.target,
        resolved.backup_dir,
        resolved.full_if_older_than,
        resolved.remove_older_than,
        resolved.skip_verify,
    )
    return resolved


def select_volumes(volumes: Iterable[Volume], config: AppConfig) -> list[Volume]:
    blacklist = set(config.volumes_blacklist)
    selected: list[Volume] = []
    for volume in volumes:
        if volume.name in blacklist:
            logger.info("Ignoring blacklisted volume %s", volume.name)
            continue
        if volume_label(volume, config, IGNORE_LABEL) == "true":
            logger.info("Ignoring volume %s (%s label set)", volume.name, label_key(config, IGNORE_LABEL))
            continue
        selected.append(volume)
    return selected
