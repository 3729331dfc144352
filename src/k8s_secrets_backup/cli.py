from __future__ import annotations

from typing import Mapping
import logging
import os
import sys

from .backup import BackupPipeline, BackupStageError, PipelineCollaborators, Stage, remove_local_artifacts
from .config import BackupConfiguration, ConfigurationError, ensure_backup_dir, load_configuration
from .k8s import load_cluster_api
from .storage import S3Uploader

LOGGER = logging.getLogger("k8s_secrets_backup")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    resolved = (level or os.getenv("LOG_LEVEL", "INFO")).strip().upper() or "INFO"
    logging.basicConfig(level=getattr(logging, resolved, logging.INFO), format=LOG_FORMAT)


def build_collaborators(config: BackupConfiguration) -> PipelineCollaborators:
    return PipelineCollaborators(
        cluster_api_factory=lambda: load_cluster_api(
            kubeconfig_path=os.getenv("KUBECONFIG"),
            context=os.getenv("KUBE_CONTEXT") or None,
        ),
        uploader_factory=lambda: S3Uploader.from_target(config.object_store, logger=LOGGER),
    )


def run(environ: Mapping[str, str] | None = None) -> int:
    try:
        config = load_configuration(environ)
    except ConfigurationError as error:
        LOGGER.error("backup failed at %s stage: %s", Stage.VALIDATING.value, error)
        return 1

    try:
        ensure_backup_dir(config)
    except OSError as error:
        LOGGER.error("cannot create backup directory %s: %s", config.backup_dir, error)
        return 1

    pipeline = BackupPipeline(config=config, collaborators=build_collaborators(config), logger=LOGGER)
    try:
        result = pipeline.run()
    except BackupStageError as error:
        LOGGER.error("backup failed at %s stage: %s", error.stage.value, error.reason)
        return 1

    if not config.keep_local_files:
        remove_local_artifacts(result)
    LOGGER.info(
        "Backed up %d secret(s) from cluster '%s' to %s",
        len(result.secret_names),
        result.cluster_name,
        result.artifact.object_store_key,
    )
    return 0


def main() -> None:
    configure_logging()
    sys.exit(run())


if __name__ == "__main__":
    main()
