from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping
import os

TRUTHY_VALUES = frozenset({"1", "true", "yes", "on"})


class BackupError(RuntimeError):
    """Base class for every failure that aborts a backup run."""


class ConfigurationError(BackupError):
    """Raised when configuration values are missing or contradict each other."""


def error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__


@dataclass(frozen=True)
class NameFilter:
    name: str


@dataclass(frozen=True)
class LabelFilter:
    key: str
    value: str

    @property
    def selector(self) -> str:
        return f"{self.key}={self.value}"


@dataclass(frozen=True)
class ExplicitClusterName:
    name: str


@dataclass(frozen=True)
class ConfigMapClusterName:
    namespace: str
    config_map_name: str
    key: str


SecretFilter = NameFilter | LabelFilter
ClusterNameSource = ExplicitClusterName | ConfigMapClusterName


@dataclass(frozen=True)
class ObjectStoreTarget:
    bucket_name: str = ""
    path: str = ""
    region: str = ""
    endpoint: str = ""
    access_key: str = ""
    secret_key: str = ""
    use_path_style: bool = False

    def validate(self) -> None:
        if _is_blank(self.bucket_name):
            raise ConfigurationError("S3__BUCKET_NAME is required")
        if _is_blank(self.region):
            raise ConfigurationError("S3__REGION is required")
        if _is_blank(self.access_key):
            raise ConfigurationError("S3__ACCESS_KEY is required")
        if _is_blank(self.secret_key):
            raise ConfigurationError("S3__SECRET_KEY is required")


@dataclass(frozen=True)
class SecretSelector:
    name: str = ""
    namespace: str = ""
    label_key: str = ""
    label_value: str = ""

    def validate(self) -> None:
        self.resolve()
        if _is_blank(self.namespace):
            raise ConfigurationError("SECRET__NAMESPACE is required")

    def resolve(self) -> SecretFilter:
        has_name = not _is_blank(self.name)
        has_label_key = not _is_blank(self.label_key)
        has_label_value = not _is_blank(self.label_value)

        if has_name and not (has_label_key or has_label_value):
            return NameFilter(name=self.name.strip())
        if not has_name and has_label_key and has_label_value:
            return LabelFilter(key=self.label_key.strip(), value=self.label_value.strip())
        raise ConfigurationError("provide either SECRET__NAME or both SECRET__LABEL_KEY and SECRET__LABEL_VALUE")


@dataclass(frozen=True)
class ClusterIdentity:
    name: str = ""
    config_map_namespace: str = ""
    config_map_name: str = ""
    config_map_key: str = ""

    def validate(self) -> None:
        self.resolve()

    def resolve(self) -> ClusterNameSource:
        supporting = (self.config_map_namespace, self.config_map_name, self.config_map_key)
        if not _is_blank(self.name) and all(_is_blank(value) for value in supporting):
            return ExplicitClusterName(name=self.name.strip())
        if _is_blank(self.name) and not any(_is_blank(value) for value in supporting):
            return ConfigMapClusterName(
                namespace=self.config_map_namespace.strip(),
                config_map_name=self.config_map_name.strip(),
                key=self.config_map_key.strip(),
            )
        raise ConfigurationError(
            "provide either CLUSTER__NAME or CLUSTER__NAME_CONFIG_MAP_NAMESPACE, "
            "CLUSTER__NAME_CONFIG_MAP_NAME, and CLUSTER__NAME_CONFIG_MAP_KEY"
        )


@dataclass(frozen=True)
class EncryptionRecipient:
    public_key: str = ""

    def validate(self) -> None:
        if _is_blank(self.public_key):
            raise ConfigurationError("AGE_RECIPIENT_PUBLIC_KEY is required")


@dataclass(frozen=True)
class BackupConfiguration:
    object_store: ObjectStoreTarget
    secret: SecretSelector
    cluster: ClusterIdentity
    recipient: EncryptionRecipient
    backup_dir: Path = Path(".")
    keep_local_files: bool = False

    def validate(self) -> None:
        """Check every section in a fixed order and raise on the first failing rule.

        Pure in-memory checks: no network or filesystem access happens here.
        """
        self.object_store.validate()
        self.secret.validate()
        self.cluster.validate()
        self.recipient.validate()


def load_configuration(environ: Mapping[str, str] | None = None) -> BackupConfiguration:
    env = os.environ if environ is None else environ
    return BackupConfiguration(
        object_store=ObjectStoreTarget(
            bucket_name=env.get("S3__BUCKET_NAME", ""),
            path=env.get("S3__PATH", ""),
            region=env.get("S3__REGION", ""),
            endpoint=env.get("S3__ENDPOINT", ""),
            access_key=env.get("S3__ACCESS_KEY", ""),
            secret_key=env.get("S3__SECRET_KEY", ""),
            use_path_style=_parse_flag(env.get("S3__USE_PATH_STYLE", "")),
        ),
        secret=SecretSelector(
            name=env.get("SECRET__NAME", ""),
            namespace=env.get("SECRET__NAMESPACE", ""),
            label_key=env.get("SECRET__LABEL_KEY", ""),
            label_value=env.get("SECRET__LABEL_VALUE", ""),
        ),
        cluster=ClusterIdentity(
            name=env.get("CLUSTER__NAME", ""),
            config_map_namespace=env.get("CLUSTER__NAME_CONFIG_MAP_NAMESPACE", ""),
            config_map_name=env.get("CLUSTER__NAME_CONFIG_MAP_NAME", ""),
            config_map_key=env.get("CLUSTER__NAME_CONFIG_MAP_KEY", ""),
        ),
        recipient=EncryptionRecipient(public_key=_recipient_public_key(env)),
        backup_dir=Path(env.get("BACKUP_DIR", "").strip() or "."),
        keep_local_files=_parse_flag(env.get("BACKUP_KEEP_LOCAL_FILES", "")),
    )


def ensure_backup_dir(config: BackupConfiguration) -> None:
    config.backup_dir.mkdir(parents=True, exist_ok=True)


def _recipient_public_key(env: Mapping[str, str]) -> str:
    # Both names have been used for the same value; neither is preferred.
    candidates = {
        value.strip()
        for value in (env.get("AGE_RECIPIENT_PUBLIC_KEY", ""), env.get("AGE_PUBLIC_KEY", ""))
        if value and value.strip()
    }
    if len(candidates) > 1:
        raise ConfigurationError("AGE_RECIPIENT_PUBLIC_KEY and AGE_PUBLIC_KEY are both set to different values")
    return candidates.pop() if candidates else ""


def _parse_flag(value: str) -> bool:
    return value.strip().lower() in TRUTHY_VALUES


def _is_blank(value: str | None) -> bool:
    return value is None or not value.strip()
