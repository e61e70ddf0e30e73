from __future__ import annotations

from typing import Protocol

from .config import AppConfig
from .errors import ConfigError
from .models import OperationInvocation, OperationResult, Volume


class ContainerRuntime(Protocol):
    def run(self, invocation: OperationInvocation) -> OperationResult:
        """Run one invocation to completion; the container never outlives the call."""
        ...

    def list_volumes(self) -> list[Volume]:
        ...


def create_runtime(config: AppConfig) -> ContainerRuntime:
    runtime_name = config.runtime.strip().lower()
    if runtime_name == "docker":
        from .docker_runtime import DockerRuntime

        return DockerRuntime.from_env(
            timeout_seconds=config.operation_timeout_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
        )
    if runtime_name == "kubernetes":
        from .k8s import KubernetesRuntime, load_kubernetes_clients

        clients = load_kubernetes_clients(
            kubeconfig_path=config.kubernetes.kubeconfig_path,
            context=config.kubernetes.context,
            in_cluster=config.kubernetes.in_cluster,
        )
        return KubernetesRuntime(
            core_api=clients.core_api,
            namespace=config.kubernetes.namespace,
            timeout_seconds=config.operation_timeout_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
        )

    raise ConfigError(f"unsupported runtime: {config.runtime}")
