from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
import logging
from typing import Callable, TypeVar

from .config import BackupConfiguration, NameFilter, SecretSelector, error_message
from .encryption import Cipher, encrypt_file
from .k8s import ClusterApi, collect_secrets, resolve_cluster_name, write_bundle
from .models import BackupArtifact, BackupRunResult
from .storage import S3Uploader, object_store_key

LOGGER = logging.getLogger(__name__)
T = TypeVar("T")

TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
PLAINTEXT_SUFFIX = ".yaml"
ENCRYPTED_SUFFIX = ".age.asc"


class Stage(str, Enum):
    VALIDATING = "validate"
    RESOLVING_IDENTITY = "resolve"
    COLLECTING = "collect"
    ENCRYPTING = "encrypt"
    UPLOADING = "upload"
    DONE = "done"
    FAILED = "failed"


class BackupStageError(RuntimeError):
    def __init__(self, *, stage: Stage, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage.value} stage failed: {normalized_reason}")
        self.stage = stage
        self.reason = normalized_reason


@dataclass(frozen=True)
class PipelineCollaborators:
    cluster_api_factory: Callable[[], ClusterApi]
    uploader_factory: Callable[[], S3Uploader]
    cipher: Cipher | None = None


class BackupPipeline:
    """Runs the validate, resolve, collect, encrypt and upload stages in order.

    Every stage must succeed before the next one starts. Failures are raised as
    :class:`BackupStageError` and nothing already written locally or remotely is
    rolled back; re-running produces a new timestamped artifact.
    """

    def __init__(
        self,
        *,
        config: BackupConfiguration,
        collaborators: PipelineCollaborators,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger = LOGGER,
    ) -> None:
        self.config = config
        self.collaborators = collaborators
        self.clock = clock or _utc_now
        self.logger = logger
        self.stage = Stage.VALIDATING

    def run(self) -> BackupRunResult:
        started_at = self.clock()

        self._enter(Stage.VALIDATING)
        self.logger.info("Validating options")
        self._run_stage(self.config.validate)
        self.logger.info("Options are valid")

        self._enter(Stage.RESOLVING_IDENTITY)
        cluster_api = self._run_stage(self.collaborators.cluster_api_factory)
        cluster_name = self._run_stage(
            lambda: resolve_cluster_name(self.config.cluster, cluster_api, logger=self.logger)
        )

        artifact = build_artifact(
            cluster_name=cluster_name,
            selector=self.config.secret,
            captured_at=started_at,
            path_prefix=self.config.object_store.path,
        )
        plaintext_path = self.config.backup_dir / artifact.plaintext_name
        encrypted_path = self.config.backup_dir / artifact.encrypted_name
        self.logger.info("not encrypted secrets file name: %s", artifact.plaintext_name)
        self.logger.info("encrypted secrets file name: %s", artifact.encrypted_name)
        self.logger.info("s3 key: %s", artifact.object_store_key)

        self._enter(Stage.COLLECTING)
        bundle = self._run_stage(lambda: collect_secrets(self.config.secret, cluster_api, logger=self.logger))
        self._run_stage(lambda: write_bundle(bundle, plaintext_path))

        self._enter(Stage.ENCRYPTING)
        self._run_stage(
            lambda: encrypt_file(
                self.config.recipient.public_key,
                plaintext_path,
                encrypted_path,
                cipher=self.collaborators.cipher,
                logger=self.logger,
            )
        )

        self._enter(Stage.UPLOADING)
        uploader = self._run_stage(self.collaborators.uploader_factory)
        self._run_stage(lambda: uploader.upload(encrypted_path, artifact.object_store_key))

        self._enter(Stage.DONE)
        self.logger.info("File uploaded successfully!")
        return BackupRunResult(
            cluster_name=cluster_name,
            artifact=artifact,
            secret_names=tuple(bundle.names),
            plaintext_path=str(plaintext_path),
            encrypted_path=str(encrypted_path),
            started_at=_iso(started_at),
            finished_at=_iso(self.clock()),
        )

    def _enter(self, stage: Stage) -> None:
        self.stage = stage
        self.logger.debug("entering %s stage", stage.value)

    def _run_stage(self, func: Callable[[], T]) -> T:
        try:
            return func()
        except Exception as error:  # pylint: disable=broad-except
            failed_stage = self.stage
            self.stage = Stage.FAILED
            raise BackupStageError(stage=failed_stage, reason=error_message(error)) from error


def build_artifact(
    *,
    cluster_name: str,
    selector: SecretSelector,
    captured_at: datetime,
    path_prefix: str = "",
) -> BackupArtifact:
    base_name = artifact_base_name(cluster_name, selector)
    timestamp = captured_at.astimezone(UTC).strftime(TIMESTAMP_FORMAT)
    plaintext_name = f"{base_name}-{timestamp}{PLAINTEXT_SUFFIX}"
    encrypted_name = f"{plaintext_name}{ENCRYPTED_SUFFIX}"
    return BackupArtifact(
        plaintext_name=plaintext_name,
        encrypted_name=encrypted_name,
        object_store_key=object_store_key(path_prefix, encrypted_name),
    )


def artifact_base_name(cluster_name: str, selector: SecretSelector) -> str:
    secret_filter = selector.resolve()
    if isinstance(secret_filter, NameFilter):
        return f"{cluster_name}-{secret_filter.name}"
    # Label keys such as app.kubernetes.io/name contain path separators.
    return f"{cluster_name}-{secret_filter.key}-{secret_filter.value}".replace("/", "_")


def remove_local_artifacts(result: BackupRunResult) -> None:
    for path in (result.plaintext_path, result.encrypted_path):
        Path(path).unlink(missing_ok=True)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC).replace(microsecond=0)


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).replace(microsecond=0).isoformat()
