from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

SECRET_LIST_API_VERSION = "v1"
SECRET_LIST_KIND = "SecretList"
SERVER_ASSIGNED_METADATA_FIELDS = ("resourceVersion", "uid", "managedFields")


@dataclass(frozen=True)
class SecretRecord:
    name: str
    namespace: str
    type: str | None
    data: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    immutable: bool | None = None

    def to_manifest(self) -> dict[str, Any]:
        metadata = {key: value for key, value in self.metadata.items() if key not in SERVER_ASSIGNED_METADATA_FIELDS}
        metadata["name"] = self.name
        metadata["namespace"] = self.namespace

        manifest: dict[str, Any] = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": metadata,
        }
        if self.type:
            manifest["type"] = self.type
        if self.data:
            manifest["data"] = dict(self.data)
        if self.immutable is not None:
            manifest["immutable"] = self.immutable
        return manifest


@dataclass(frozen=True)
class SecretBundle:
    items: tuple[SecretRecord, ...] = ()

    @property
    def names(self) -> list[str]:
        return [record.name for record in self.items]

    def __len__(self) -> int:
        return len(self.items)

    def to_manifest(self) -> dict[str, Any]:
        return {
            "apiVersion": SECRET_LIST_API_VERSION,
            "kind": SECRET_LIST_KIND,
            "items": [record.to_manifest() for record in self.items],
        }


@dataclass(frozen=True)
class BackupArtifact:
    plaintext_name: str
    encrypted_name: str
    object_store_key: str


@dataclass(frozen=True)
class BackupRunResult:
    cluster_name: str
    artifact: BackupArtifact
    secret_names: tuple[str, ...]
    plaintext_path: str
    encrypted_path: str
    started_at: str
    finished_at: str
