from __future__ import annotations

import argparse
from dataclasses import replace
import logging
import sys
from typing import Sequence

from .config import AppConfig, load_config
from .errors import (
    BackupStageError,
    ConfigError,
    ContainerRuntimeError,
    MetricsPublishError,
    UnsupportedCapabilityError,
)
from .k8s import KubernetesAuthenticationError
from .metrics import push_metrics
from .models import Volume
from .pipeline import PipelineController, validate_config
from .resolver import select_volumes
from .runtime import ContainerRuntime, create_runtime

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="volume-backup-agent",
        description="Back up container volumes with an external backup tool and report metrics.",
    )
    parser.add_argument("--config", help="YAML configuration file applied over VBA_* environment defaults")
    parser.add_argument("--log-level", default="INFO", help="logging level (default: INFO)")
    parser.add_argument("--engine", help="backup engine to use (duplicity, rclone)")
    parser.add_argument("--runtime", choices=("docker", "kubernetes"), help="container runtime to use")
    parser.add_argument("--no-verify", action="store_true", help="skip the verification stage for every volume")
    parser.add_argument("--push", action="store_true", help="push metrics to the configured pushgateway")

    subparsers = parser.add_subparsers(dest="command", required=True)
    backup_parser = subparsers.add_parser("backup", help="run the backup pipeline")
    backup_parser.add_argument("volumes", nargs="*", help="volume names (default: every discovered volume)")
    restore_parser = subparsers.add_parser("restore", help="restore volumes from their backup target")
    restore_parser.add_argument("volumes", nargs="+", help="volume names to restore")
    return parser


def apply_arguments(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    changes: dict[str, object] = {}
    if args.engine:
        changes["engine"] = args.engine
    if args.runtime:
        changes["runtime"] = args.runtime
    if args.no_verify:
        changes["no_verify"] = True
    return replace(config, **changes) if changes else config


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = apply_arguments(load_config(args.config), args)
        validate_config(config)
        runtime = create_runtime(config)
        volumes = _target_volumes(runtime, config, args.volumes, discover=args.command == "backup")
    except (ConfigError, ContainerRuntimeError, KubernetesAuthenticationError) as error:
        logger.error("%s", error)
        return 2

    controller = PipelineController(runtime=runtime, config=config)
    exit_code = 0
    metrics: list[str] = []
    for volume in volumes:
        try:
            if args.command == "restore":
                metrics.extend(controller.restore(volume))
            else:
                metrics.extend(controller.run(volume))
        except (BackupStageError, ConfigError, UnsupportedCapabilityError) as error:
            logger.error("Volume %s failed: %s", volume.name, error)
            exit_code = 1

    for line in metrics:
        print(line)

    if args.push:
        if not config.metrics.pushgateway_url:
            logger.error("--push requires a pushgateway URL (metrics.pushgateway_url)")
            return 2
        try:
            push_metrics(config.metrics.pushgateway_url, metrics, instance=config.hostname)
        except MetricsPublishError as error:
            logger.error("%s", error)
            exit_code = 1

    return exit_code


def _target_volumes(
    runtime: ContainerRuntime,
    config: AppConfig,
    names: Sequence[str],
    *,
    discover: bool,
) -> list[Volume]:
    inventory = runtime.list_volumes()
    if not names:
        return select_volumes(inventory, config) if discover else []

    by_name = {volume.name: volume for volume in inventory}
    missing = [name for name in names if name not in by_name]
    if missing:
        raise ConfigError(f"unknown volume(s): {', '.join(missing)}")
    return [by_name[name] for name in names]


if __name__ == "__main__":
    sys.exit(main())
