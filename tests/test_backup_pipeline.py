from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import Mock

import pyrage
import pytest
import yaml
from kubernetes.client import ApiException

from k8s_secrets_backup.backup import BackupPipeline, BackupStageError, PipelineCollaborators, Stage
from k8s_secrets_backup.config import (
    BackupConfiguration,
    ClusterIdentity,
    EncryptionRecipient,
    ObjectStoreTarget,
    SecretSelector,
)
from k8s_secrets_backup.storage import UploadError

CAPTURED_AT = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)


def _config(
    tmp_path: Path,
    *,
    public_key: str,
    secret: SecretSelector | None = None,
    cluster: ClusterIdentity | None = None,
    bucket_name: str = "backups",
) -> BackupConfiguration:
    return BackupConfiguration(
        object_store=ObjectStoreTarget(
            bucket_name=bucket_name,
            path="secrets",
            region="us-east-1",
            access_key="access",
            secret_key="secret",
        ),
        secret=secret or SecretSelector(name="db-creds", namespace="prod"),
        cluster=cluster or ClusterIdentity(name="east-1"),
        recipient=EncryptionRecipient(public_key=public_key),
        backup_dir=tmp_path,
    )


def _secret_item(name: str) -> dict:
    return {
        "metadata": {
            "name": name,
            "namespace": "prod",
            "resourceVersion": "991",
            "uid": "c0ffee",
            "managedFields": [{"manager": "helm"}],
        },
        "type": "Opaque",
        "data": {"password": "c3VwZXItc2VjcmV0"},
    }


def _pipeline(
    config: BackupConfiguration,
    *,
    cluster_api: Mock | None = None,
    uploader: Mock | None = None,
) -> BackupPipeline:
    cluster_api = cluster_api or Mock()
    uploader = uploader or Mock()
    return BackupPipeline(
        config=config,
        collaborators=PipelineCollaborators(
            cluster_api_factory=lambda: cluster_api,
            uploader_factory=lambda: uploader,
        ),
        clock=lambda: CAPTURED_AT,
    )


def test_run_collects_encrypts_and_uploads_under_deterministic_key(tmp_path: Path) -> None:
    identity = pyrage.x25519.Identity.generate()
    cluster_api = Mock()
    cluster_api.list_secrets.return_value = [_secret_item("db-creds")]
    uploaded: dict[str, bytes] = {}
    uploader = Mock()
    uploader.upload.side_effect = lambda path, key: uploaded.setdefault(key, path.read_bytes())
    pipeline = _pipeline(_config(tmp_path, public_key=str(identity.to_public())), cluster_api=cluster_api, uploader=uploader)

    result = pipeline.run()

    assert pipeline.stage is Stage.DONE
    assert result.cluster_name == "east-1"
    assert result.secret_names == ("db-creds",)
    assert result.artifact.plaintext_name == "east-1-db-creds-2024-01-02_03-04-05.yaml"
    assert result.artifact.encrypted_name == "east-1-db-creds-2024-01-02_03-04-05.yaml.age.asc"
    assert result.artifact.object_store_key == "secrets/east-1-db-creds-2024-01-02_03-04-05.yaml.age.asc"

    plaintext = (tmp_path / result.artifact.plaintext_name).read_bytes()
    decrypted = pyrage.decrypt(uploaded[result.artifact.object_store_key], [identity])
    assert decrypted == plaintext
    document = yaml.safe_load(decrypted)
    assert document["kind"] == "SecretList"
    assert "uid" not in document["items"][0]["metadata"]


def test_run_with_zero_matching_secrets_uploads_empty_bundle(tmp_path: Path) -> None:
    identity = pyrage.x25519.Identity.generate()
    cluster_api = Mock()
    cluster_api.list_secrets.return_value = []
    uploaded: dict[str, bytes] = {}
    uploader = Mock()
    uploader.upload.side_effect = lambda path, key: uploaded.setdefault(key, path.read_bytes())
    config = _config(
        tmp_path,
        public_key=str(identity.to_public()),
        secret=SecretSelector(namespace="prod", label_key="app.kubernetes.io/part-of", label_value="billing"),
    )

    result = _pipeline(config, cluster_api=cluster_api, uploader=uploader).run()

    assert result.secret_names == ()
    assert result.artifact.plaintext_name == "east-1-app.kubernetes.io_part-of-billing-2024-01-02_03-04-05.yaml"
    decrypted = pyrage.decrypt(uploaded[result.artifact.object_store_key], [identity])
    assert yaml.safe_load(decrypted) == {"apiVersion": "v1", "kind": "SecretList", "items": []}


def test_run_resolves_cluster_name_from_config_map(tmp_path: Path) -> None:
    identity = pyrage.x25519.Identity.generate()
    cluster_api = Mock()
    cluster_api.read_config_map.return_value = {"cluster-name": "west-2"}
    cluster_api.list_secrets.return_value = [_secret_item("db-creds")]
    config = _config(
        tmp_path,
        public_key=str(identity.to_public()),
        cluster=ClusterIdentity(
            config_map_namespace="kube-system",
            config_map_name="cluster-info",
            config_map_key="cluster-name",
        ),
    )

    result = _pipeline(config, cluster_api=cluster_api).run()

    assert result.artifact.plaintext_name.startswith("west-2-db-creds-")


def test_run_with_invalid_configuration_fails_before_any_collaborator_is_built(tmp_path: Path) -> None:
    cluster_api_factory = Mock()
    uploader_factory = Mock()
    pipeline = BackupPipeline(
        config=_config(tmp_path, public_key="age1key", bucket_name=""),
        collaborators=PipelineCollaborators(
            cluster_api_factory=cluster_api_factory,
            uploader_factory=uploader_factory,
        ),
        clock=lambda: CAPTURED_AT,
    )

    with pytest.raises(BackupStageError, match="validate stage failed: S3__BUCKET_NAME is required") as error:
        pipeline.run()

    assert error.value.stage is Stage.VALIDATING
    assert pipeline.stage is Stage.FAILED
    cluster_api_factory.assert_not_called()
    uploader_factory.assert_not_called()
    assert list(tmp_path.iterdir()) == []


def test_run_with_missing_config_map_key_fails_in_resolve_stage(tmp_path: Path) -> None:
    cluster_api = Mock()
    cluster_api.read_config_map.return_value = {}
    config = _config(
        tmp_path,
        public_key="age1key",
        cluster=ClusterIdentity(
            config_map_namespace="kube-system",
            config_map_name="cluster-info",
            config_map_key="cluster-name",
        ),
    )

    with pytest.raises(BackupStageError) as error:
        _pipeline(config, cluster_api=cluster_api).run()

    assert error.value.stage is Stage.RESOLVING_IDENTITY
    assert "cluster name not found in the 'cluster-name' field" in error.value.reason
    cluster_api.list_secrets.assert_not_called()


def test_run_with_listing_failure_fails_in_collect_stage_without_writing_files(tmp_path: Path) -> None:
    cluster_api = Mock()
    cluster_api.list_secrets.side_effect = ApiException(status=403, reason="Forbidden")

    with pytest.raises(BackupStageError) as error:
        _pipeline(_config(tmp_path, public_key="age1key"), cluster_api=cluster_api).run()

    assert error.value.stage is Stage.COLLECTING
    assert "API status 403 (Forbidden)" in error.value.reason
    assert list(tmp_path.iterdir()) == []


def test_run_with_malformed_recipient_fails_in_encrypt_stage_and_never_uploads(tmp_path: Path) -> None:
    cluster_api = Mock()
    cluster_api.list_secrets.return_value = [_secret_item("db-creds")]
    uploader_factory = Mock()
    pipeline = BackupPipeline(
        config=_config(tmp_path, public_key="not-a-recipient"),
        collaborators=PipelineCollaborators(
            cluster_api_factory=lambda: cluster_api,
            uploader_factory=uploader_factory,
        ),
        clock=lambda: CAPTURED_AT,
    )

    with pytest.raises(BackupStageError) as error:
        pipeline.run()

    assert error.value.stage is Stage.ENCRYPTING
    assert "failed to parse recipient public key" in error.value.reason
    uploader_factory.assert_not_called()
    assert [path.name for path in tmp_path.iterdir()] == ["east-1-db-creds-2024-01-02_03-04-05.yaml"]


def test_run_with_upload_failure_fails_in_upload_stage_and_keeps_local_files(tmp_path: Path) -> None:
    identity = pyrage.x25519.Identity.generate()
    cluster_api = Mock()
    cluster_api.list_secrets.return_value = [_secret_item("db-creds")]
    uploader = Mock()
    uploader.upload.side_effect = UploadError("failed to upload: AccessDenied (Access Denied)")

    with pytest.raises(BackupStageError) as error:
        _pipeline(
            _config(tmp_path, public_key=str(identity.to_public())),
            cluster_api=cluster_api,
            uploader=uploader,
        ).run()

    assert error.value.stage is Stage.UPLOADING
    assert str(error.value) == "upload stage failed: failed to upload: AccessDenied (Access Denied)"
    assert isinstance(error.value.__cause__, UploadError)
    assert sorted(path.name for path in tmp_path.iterdir()) == [
        "east-1-db-creds-2024-01-02_03-04-05.yaml",
        "east-1-db-creds-2024-01-02_03-04-05.yaml.age.asc",
    ]
