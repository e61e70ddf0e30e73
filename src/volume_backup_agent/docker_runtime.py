from __future__ import annotations

import logging
import math
import time
from typing import Any

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
import requests

from .errors import ContainerRuntimeError, error_message
from .models import OperationInvocation, OperationResult, Volume

logger = logging.getLogger(__name__)


class DockerRuntime:
    """Runs operation invocations as ephemeral Docker containers."""

    def __init__(
        self,
        *,
        client: docker.DockerClient,
        timeout_seconds: int,
        poll_interval_seconds: int = 2,
    ) -> None:
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    @classmethod
    def from_env(cls, *, timeout_seconds: int, poll_interval_seconds: int = 2) -> DockerRuntime:
        try:
            client = docker.from_env()
        except DockerException as error:
            raise ContainerRuntimeError(f"failed to connect to Docker: {error_message(error)}") from error
        return cls(client=client, timeout_seconds=timeout_seconds, poll_interval_seconds=poll_interval_seconds)

    def list_volumes(self) -> list[Volume]:
        try:
            docker_volumes = self.client.volumes.list()
        except DockerException as error:
            raise ContainerRuntimeError(f"failed to list volumes: {error_message(error)}") from error

        records = [_volume_record(item) for item in docker_volumes]
        records.sort(key=lambda item: item.name)
        return records

    def ensure_image(self, image: str) -> None:
        try:
            self.client.images.get(image)
            return
        except ImageNotFound:
            pass
        except DockerException as error:
            raise ContainerRuntimeError(f"failed to inspect image {image}: {error_message(error)}") from error

        logger.info("Pulling image %s", image)
        try:
            self.client.images.pull(image)
        except DockerException as error:
            raise ContainerRuntimeError(f"failed to pull image {image}: {error_message(error)}") from error

    def run(self, invocation: OperationInvocation) -> OperationResult:
        self.ensure_image(invocation.image)

        logger.debug(
            "Creating container image=%s command=%s binds=%s environment=%s",
            invocation.image,
            " ".join(invocation.command),
            ", ".join(invocation.binds),
            ", ".join(sorted(invocation.environment)),
        )
        try:
            container = self.client.containers.create(
                image=invocation.image,
                command=list(invocation.command),
                environment=invocation.environment_list(),
                volumes=list(invocation.binds),
                stdin_open=True,
                tty=True,
            )
        except DockerException as error:
            raise ContainerRuntimeError(f"failed to create container: {error_message(error)}") from error

        try:
            logger.debug("Launching '%s' in container %s", " ".join(invocation.command), container.short_id)
            try:
                container.start()
            except DockerException as error:
                raise ContainerRuntimeError(f"failed to start container: {error_message(error)}") from error

            exit_code = self._wait_for_exit(container)
            output = self._read_logs(container)
        finally:
            self._remove_container(container)

        logger.debug("Container output:\n%s", output)
        return OperationResult(exit_code=exit_code, output=output)

    def _wait_for_exit(self, container: Any) -> int:
        deadline = time.monotonic() + self.timeout_seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ContainerRuntimeError(
                    f"operation timed out after {self.timeout_seconds}s waiting for container {container.short_id}"
                )
            try:
                status = container.wait(timeout=max(1, math.ceil(remaining)))
            except NotFound as error:
                raise ContainerRuntimeError(
                    f"container {container.short_id} disappeared while waiting: {error_message(error)}"
                ) from error
            except (DockerException, requests.RequestException) as error:
                logger.error("Failed to wait for container %s: %s", container.short_id, error_message(error))
                time.sleep(self.poll_interval_seconds)
                continue
            return int(status.get("StatusCode", -1))

    def _read_logs(self, container: Any) -> str:
        try:
            content = container.logs(stdout=True, stderr=True)
        except DockerException as error:
            logger.error("Failed to retrieve logs of container %s: %s", container.short_id, error_message(error))
            return ""
        if isinstance(content, bytes):
            return content.decode("utf-8", errors="replace")
        return str(content)

    def _remove_container(self, container: Any) -> None:
        try:
            container.remove(force=True)
        except NotFound:
            return
        except DockerException as error:
            logger.error("Failed to remove container %s: %s", container.short_id, error_message(error))


def _volume_record(docker_volume: Any) -> Volume:
    attrs = getattr(docker_volume, "attrs", None) or {}
    return Volume(
        name=attrs.get("Name") or docker_volume.name,
        driver=attrs.get("Driver") or "",
        mountpoint=attrs.get("Mountpoint") or "",
        labels=dict(attrs.get("Labels") or {}),
    )
