from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import re
import time
import uuid

from kubernetes import client, config
from kubernetes.client import ApiException

from .errors import ContainerRuntimeError, error_message
from .models import OperationInvocation, OperationResult, Volume

logger = logging.getLogger(__name__)

DEFAULT_MOUNT_ROOT = "/data"
TERMINAL_PHASES = {"Succeeded", "Failed"}


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context or None)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(api_client=api_client, core_api=client.CoreV1Api(api_client))


class KubernetesRuntime:
    """Runs operation invocations as one-shot pods in a namespace.

    Volumes are the namespace's PersistentVolumeClaims; a bind source naming a
    claim is mounted from it, any other source gets an ``emptyDir``.
    """

    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        namespace: str,
        timeout_seconds: int,
        poll_interval_seconds: int = 2,
        mount_root: str = DEFAULT_MOUNT_ROOT,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.mount_root = mount_root.rstrip("/")

    def list_volumes(self) -> list[Volume]:
        try:
            claims = self.core_api.list_namespaced_persistent_volume_claim(namespace=self.namespace).items
        except ApiException as error:
            raise ContainerRuntimeError(
                f"failed to list PVCs in namespace '{self.namespace}': {_api_error_reason(error)}"
            ) from error

        records: list[Volume] = []
        for claim in claims:
            metadata = claim.metadata
            name = metadata.name or ""
            labels: dict[str, str] = {}
            labels.update(metadata.annotations or {})
            labels.update(metadata.labels or {})
            storage_class = claim.spec.storage_class_name if claim.spec else None
            records.append(
                Volume(
                    name=name,
                    driver=storage_class or "kubernetes",
                    mountpoint=f"{self.mount_root}/{name}",
                    labels=labels,
                )
            )

        records.sort(key=lambda item: item.name)
        return records

    def run(self, invocation: OperationInvocation) -> OperationResult:
        pod_name = _pod_name(invocation.image)
        pod = self._build_pod(pod_name=pod_name, invocation=invocation)

        logger.debug(
            "Creating pod %s/%s image=%s command=%s binds=%s",
            self.namespace,
            pod_name,
            invocation.image,
            " ".join(invocation.command),
            ", ".join(invocation.binds),
        )
        try:
            self.core_api.create_namespaced_pod(namespace=self.namespace, body=pod)
        except ApiException as error:
            raise ContainerRuntimeError(f"failed to create pod {pod_name}: {_api_error_reason(error)}") from error

        try:
            exit_code = self._wait_for_pod_completion(pod_name=pod_name)
            output = self._read_logs(pod_name=pod_name)
        finally:
            self._delete_pod(pod_name=pod_name)

        logger.debug("Pod output:\n%s", output)
        return OperationResult(exit_code=exit_code, output=output)

    def _build_pod(self, *, pod_name: str, invocation: OperationInvocation) -> client.V1Pod:
        volumes: list[client.V1Volume] = []
        volume_mounts: list[client.V1VolumeMount] = []
        for index, bind in enumerate(invocation.binds):
            source, mount_path, read_only = parse_bind(bind)
            volume_name = f"bind-{index}"
            if self._is_claim(source):
                volume = client.V1Volume(
                    name=volume_name,
                    persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                        claim_name=source,
                        read_only=read_only,
                    ),
                )
            else:
                volume = client.V1Volume(name=volume_name, empty_dir=client.V1EmptyDirVolumeSource())
            volumes.append(volume)
            volume_mounts.append(client.V1VolumeMount(name=volume_name, mount_path=mount_path, read_only=read_only))

        return client.V1Pod(
            metadata=client.V1ObjectMeta(
                name=pod_name,
                labels={
                    "app.kubernetes.io/name": "volume-backup-agent",
                    "app.kubernetes.io/component": "operation",
                },
            ),
            spec=client.V1PodSpec(
                restart_policy="Never",
                containers=[
                    client.V1Container(
                        name="operation",
                        image=invocation.image,
                        args=list(invocation.command),
                        env=[client.V1EnvVar(name=key, value=value) for key, value in invocation.environment.items()],
                        stdin=True,
                        stdin_once=True,
                        tty=True,
                        volume_mounts=volume_mounts,
                    )
                ],
                volumes=volumes,
            ),
        )

    def _is_claim(self, name: str) -> bool:
        try:
            self.core_api.read_namespaced_persistent_volume_claim(name=name, namespace=self.namespace)
        except ApiException as error:
            if error.status == 404:
                return False
            raise ContainerRuntimeError(f"failed to look up PVC {name}: {_api_error_reason(error)}") from error
        return True

    def _wait_for_pod_completion(self, *, pod_name: str) -> int:
        deadline = time.monotonic() + self.timeout_seconds
        while time.monotonic() < deadline:
            try:
                pod = self.core_api.read_namespaced_pod(name=pod_name, namespace=self.namespace)
            except ApiException as error:
                logger.error("Failed to inspect pod %s: %s", pod_name, _api_error_reason(error))
                time.sleep(self.poll_interval_seconds)
                continue

            phase = pod.status.phase if pod.status and pod.status.phase else "Unknown"
            if phase in TERMINAL_PHASES:
                return _terminated_exit_code(pod)
            time.sleep(self.poll_interval_seconds)

        raise ContainerRuntimeError(f"operation timed out after {self.timeout_seconds}s waiting for pod {pod_name}")

    def _read_logs(self, *, pod_name: str) -> str:
        try:
            return self.core_api.read_namespaced_pod_log(name=pod_name, namespace=self.namespace) or ""
        except ApiException as error:
            logger.error("Failed to retrieve logs of pod %s: %s", pod_name, _api_error_reason(error))
            return ""

    def _delete_pod(self, *, pod_name: str) -> None:
        try:
            self.core_api.delete_namespaced_pod(
                name=pod_name,
                namespace=self.namespace,
                grace_period_seconds=0,
                body=client.V1DeleteOptions(),
            )
        except ApiException as error:
            if error.status == 404:
                return
            logger.error("Failed to delete pod %s: %s", pod_name, _api_error_reason(error))


def parse_bind(bind: str) -> tuple[str, str, bool]:
    parts = bind.split(":")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise ContainerRuntimeError(f"invalid bind specification: {bind!r}")
    read_only = len(parts) > 2 and "ro" in parts[2].split(",")
    return parts[0], parts[1], read_only


def _terminated_exit_code(pod: object) -> int:
    pod_status = getattr(pod, "status", None)
    for container_status in getattr(pod_status, "container_statuses", None) or []:
        state = getattr(container_status, "state", None)
        terminated = getattr(state, "terminated", None) if state is not None else None
        if terminated is not None and terminated.exit_code is not None:
            return int(terminated.exit_code)
    return 0 if getattr(pod_status, "phase", None) == "Succeeded" else 1


def _pod_name(image: str) -> str:
    tool = image.rsplit("/", 1)[-1].split(":", 1)[0]
    return _sanitize_dns_label(f"vba-{tool}-{uuid.uuid4().hex[:8]}", max_length=63)


def _sanitize_dns_label(value: str, max_length: int) -> str:
    lowered = value.lower()
    normalized = re.sub(r"[^a-z0-9-]", "-", lowered).strip("-")
    normalized = re.sub(r"-+", "-", normalized)
    if len(normalized) > max_length:
        normalized = normalized[:max_length].rstrip("-")
    return normalized or "vba-operation"


def _api_error_reason(error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"API status {status} ({reason})"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = error_message(error)
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
