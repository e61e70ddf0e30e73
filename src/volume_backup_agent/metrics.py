from __future__ import annotations

import logging
from typing import Iterable
from urllib.parse import quote

import requests

from .errors import MetricsPublishError, error_message

logger = logging.getLogger(__name__)

METRIC_NAME = "volume_backup_agent"

BACKUP_EXIT_CODE = "backupExitCode"
VERIFY_EXIT_CODE = "verifyExitCode"
RESTORE_EXIT_CODE = "restoreExitCode"
LAST_BACKUP = "lastBackup"
LAST_FULL_BACKUP = "lastFullBackup"


def format_metric(volume_name: str, what: str, value: int | float) -> str:
    return f'{METRIC_NAME}{{volume="{volume_name}",what="{what}"}} {value}'


def render_exposition(lines: Iterable[str]) -> str:
    body = [f"# TYPE {METRIC_NAME} gauge", *lines]
    return "\n".join(body) + "\n"


def push_metrics(
    gateway_url: str,
    lines: list[str],
    *,
    job: str = METRIC_NAME,
    instance: str,
    timeout_seconds: int = 30,
) -> None:
    if not lines:
        return

    url = f"{gateway_url.rstrip('/')}/metrics/job/{quote(job, safe='')}/instance/{quote(instance, safe='')}"
    logger.debug("Pushing %d metric lines to %s", len(lines), url)
    try:
        response = requests.put(
            url,
            data=render_exposition(lines).encode("utf-8"),
            headers={"Content-Type": "text/plain; version=0.0.4"},
            timeout=timeout_seconds,
        )
        response.raise_for_status()
    except requests.RequestException as error:
        raise MetricsPublishError(f"failed to push metrics to {url}: {error_message(error)}") from error
