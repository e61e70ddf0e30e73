from __future__ import annotations

import logging

from .config import AppConfig
from .engines import BackupEngine, PipelineContext, get_engine_class
from .errors import BackupStageError, ConfigError, UnsupportedCapabilityError
from .models import Capability, Volume
from .resolver import resolve_volume
from .runtime import ContainerRuntime

logger = logging.getLogger(__name__)


def validate_config(config: AppConfig) -> type:
    """Check the settings every pipeline needs and return the selected engine class."""
    engine_class = get_engine_class(config.engine)
    if not engine_class.target_url(config).strip():
        raise ConfigError(f"{engine_class.name}.target_url must not be empty")
    if not config.duplicity.full_if_older_than.strip():
        raise ConfigError("duplicity.full_if_older_than must not be empty")
    if not config.duplicity.remove_older_than.strip():
        raise ConfigError("duplicity.remove_older_than must not be empty")
    return engine_class


class PipelineController:
    """Runs the backup pipeline of one volume at a time.

    A stage failing with fatal severity stops the pipeline and propagates the
    ``BackupStageError``; any other stage failure is logged and the pipeline
    moves on without that stage's metrics.
    """

    def __init__(self, *, runtime: ContainerRuntime, config: AppConfig) -> None:
        self.context = PipelineContext(runtime=runtime, config=config)

    @property
    def config(self) -> AppConfig:
        return self.context.config

    def build_engine(self, volume: Volume, engine_class: type | None = None) -> BackupEngine:
        engine_class = engine_class or get_engine_class(self.config.engine)
        resolved = resolve_volume(volume, self.config, target_url=engine_class.target_url(self.config))
        return engine_class(context=self.context, volume=resolved)

    def run(self, volume: Volume) -> list[str]:
        engine = self.build_engine(volume)
        logger.info(
            "Backing up volume %s (driver=%s, mountpoint=%s) with %s",
            volume.name,
            volume.driver,
            volume.mountpoint,
            engine.name,
        )

        metrics: list[str] = []
        for stage in engine.stages():
            logger.debug("Running %s stage for volume %s", stage.name, volume.name)
            try:
                metrics.extend(stage.run())
            except BackupStageError as error:
                if error.fatal:
                    logger.error("Pipeline of volume %s aborted at %s stage: %s", volume.name, stage.name, error)
                    raise
                logger.error("Volume %s: %s stage failed, continuing: %s", volume.name, stage.name, error)
        return metrics

    def restore(self, volume: Volume) -> list[str]:
        engine_class = get_engine_class(self.config.engine)
        if Capability.RESTORE not in engine_class.capabilities:
            raise UnsupportedCapabilityError(engine=engine_class.name, capability=Capability.RESTORE.value)

        engine = self.build_engine(volume, engine_class)
        logger.info("Restoring volume %s with %s", volume.name, engine.name)
        return engine.restore()  # type: ignore[attr-defined]
