from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import Mock

import pytest
import requests
from docker.errors import APIError, ImageNotFound, NotFound

from volume_backup_agent.docker_runtime import DockerRuntime
from volume_backup_agent.errors import ContainerRuntimeError, Severity
from volume_backup_agent.models import OperationInvocation


def _invocation() -> OperationInvocation:
    return OperationInvocation(
        command=("collection-status", "--name", "db1", "s3://bucket/host1/db1"),
        environment={"AWS_ACCESS_KEY_ID": "AKIA"},
        binds=("db1:/mnt/db1:ro", "duplicity_cache:/root/.cache/duplicity"),
        image="camptocamp/duplicity:latest",
    )


def _container(*, exit_code: int = 0, logs: bytes = b"done\n") -> Mock:
    container = Mock()
    container.short_id = "abc123"
    container.wait.return_value = {"StatusCode": exit_code}
    container.logs.return_value = logs
    return container


def _runtime(client: Mock, *, timeout_seconds: int = 60) -> DockerRuntime:
    return DockerRuntime(client=client, timeout_seconds=timeout_seconds, poll_interval_seconds=0)


def _monotonic_sequence(values: list[float]):
    remaining = list(values)

    def _next() -> float:
        if len(remaining) > 1:
            return remaining.pop(0)
        return remaining[0]

    return _next


def test_run_with_successful_container_returns_exit_code_and_output_and_removes_container() -> None:
    client = Mock()
    container = _container(exit_code=3, logs=b"Last full backup date: none\r\n")
    client.containers.create.return_value = container

    result = _runtime(client).run(_invocation())

    assert result.exit_code == 3
    assert result.output == "Last full backup date: none\r\n"
    client.containers.create.assert_called_once_with(
        image="camptocamp/duplicity:latest",
        command=["collection-status", "--name", "db1", "s3://bucket/host1/db1"],
        environment=["AWS_ACCESS_KEY_ID=AKIA"],
        volumes=["db1:/mnt/db1:ro", "duplicity_cache:/root/.cache/duplicity"],
        stdin_open=True,
        tty=True,
    )
    container.start.assert_called_once_with()
    container.remove.assert_called_once_with(force=True)


def test_run_with_missing_image_pulls_before_creating() -> None:
    client = Mock()
    client.images.get.side_effect = ImageNotFound("no such image")
    client.containers.create.return_value = _container()

    _runtime(client).run(_invocation())

    client.images.pull.assert_called_once_with("camptocamp/duplicity:latest")


def test_run_with_pull_failure_raises_fatal_error_without_creating_container() -> None:
    client = Mock()
    client.images.get.side_effect = ImageNotFound("no such image")
    client.images.pull.side_effect = APIError("registry unavailable")

    with pytest.raises(ContainerRuntimeError, match="failed to pull image") as error:
        _runtime(client).run(_invocation())

    assert error.value.severity is Severity.FATAL
    client.containers.create.assert_not_called()


def test_run_with_create_failure_raises_fatal_error() -> None:
    client = Mock()
    client.containers.create.side_effect = APIError("conflict")

    with pytest.raises(ContainerRuntimeError, match="failed to create container"):
        _runtime(client).run(_invocation())


def test_run_with_start_failure_raises_and_still_removes_container() -> None:
    client = Mock()
    container = _container()
    container.start.side_effect = APIError("cannot start")
    client.containers.create.return_value = container

    with pytest.raises(ContainerRuntimeError, match="failed to start container"):
        _runtime(client).run(_invocation())

    container.remove.assert_called_once_with(force=True)
    container.wait.assert_not_called()


def test_run_with_unexpected_exception_still_removes_container() -> None:
    client = Mock()
    container = _container()
    container.wait.side_effect = KeyboardInterrupt()
    client.containers.create.return_value = container

    with pytest.raises(KeyboardInterrupt):
        _runtime(client).run(_invocation())

    container.remove.assert_called_once_with(force=True)


def test_run_with_log_retrieval_failure_returns_empty_output() -> None:
    client = Mock()
    container = _container(exit_code=0)
    container.logs.side_effect = APIError("logs unavailable")
    client.containers.create.return_value = container

    result = _runtime(client).run(_invocation())

    assert result.exit_code == 0
    assert result.output == ""
    container.remove.assert_called_once_with(force=True)


def test_run_with_transient_wait_error_retries_until_exit() -> None:
    client = Mock()
    container = _container(exit_code=0)
    container.wait.side_effect = [APIError("daemon busy"), {"StatusCode": 4}]
    client.containers.create.return_value = container

    result = _runtime(client).run(_invocation())

    assert result.exit_code == 4
    assert container.wait.call_count == 2


def test_run_with_wait_past_deadline_raises_timeout_and_removes_container(monkeypatch: pytest.MonkeyPatch) -> None:
    client = Mock()
    container = _container()
    container.wait.side_effect = requests.exceptions.ReadTimeout("read timed out")
    client.containers.create.return_value = container

    monkeypatch.setattr("volume_backup_agent.docker_runtime.time.monotonic", _monotonic_sequence([0.0, 0.0, 11.0]))
    monkeypatch.setattr("volume_backup_agent.docker_runtime.time.sleep", lambda _: None)

    with pytest.raises(ContainerRuntimeError, match="operation timed out") as error:
        _runtime(client, timeout_seconds=10).run(_invocation())

    assert error.value.severity is Severity.FATAL
    container.wait.assert_called_once_with(timeout=10)
    container.remove.assert_called_once_with(force=True)


def test_run_with_container_gone_while_waiting_raises_fatal_error_without_retrying() -> None:
    client = Mock()
    container = _container()
    container.wait.side_effect = NotFound("No such container: abc123")
    client.containers.create.return_value = container

    with pytest.raises(ContainerRuntimeError, match="disappeared while waiting") as error:
        _runtime(client).run(_invocation())

    assert error.value.severity is Severity.FATAL
    container.wait.assert_called_once()
    container.remove.assert_called_once_with(force=True)


def test_run_with_container_already_removed_ignores_not_found() -> None:
    client = Mock()
    container = _container()
    container.remove.side_effect = NotFound("gone")
    client.containers.create.return_value = container

    result = _runtime(client).run(_invocation())

    assert result.exit_code == 0


def test_list_volumes_with_docker_inventory_returns_sorted_volume_records() -> None:
    client = Mock()
    client.volumes.list.return_value = [
        SimpleNamespace(
            name="web",
            attrs={"Name": "web", "Driver": "local", "Mountpoint": "/var/lib/docker/volumes/web/_data", "Labels": None},
        ),
        SimpleNamespace(
            name="db1",
            attrs={
                "Name": "db1",
                "Driver": "local",
                "Mountpoint": "/var/lib/docker/volumes/db1/_data",
                "Labels": {"io.volume-backup-agent.no_verify": "true"},
            },
        ),
    ]

    volumes = _runtime(client).list_volumes()

    assert [volume.name for volume in volumes] == ["db1", "web"]
    assert volumes[0].mountpoint == "/var/lib/docker/volumes/db1/_data"
    assert volumes[0].labels == {"io.volume-backup-agent.no_verify": "true"}
    assert volumes[1].labels == {}


def test_list_volumes_with_api_failure_raises_runtime_error() -> None:
    client = Mock()
    client.volumes.list.side_effect = APIError("daemon down")

    with pytest.raises(ContainerRuntimeError, match="failed to list volumes"):
        _runtime(client).list_volumes()
