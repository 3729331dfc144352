from __future__ import annotations

from pathlib import Path
import logging
import posixpath
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import BackupError, ObjectStoreTarget

LOGGER = logging.getLogger(__name__)


class UploadError(BackupError):
    """Raised when the encrypted artifact cannot be written to the object store."""


def build_s3_client(target: ObjectStoreTarget) -> Any:
    client_config = Config(s3={"addressing_style": "path"}) if target.use_path_style else None
    session = boto3.session.Session(
        aws_access_key_id=target.access_key.strip(),
        aws_secret_access_key=target.secret_key.strip(),
        region_name=target.region.strip(),
    )
    return session.client(
        "s3",
        endpoint_url=target.endpoint.strip() or None,
        config=client_config,
    )


def object_store_key(path_prefix: str, name: str) -> str:
    prefix = path_prefix.strip()
    if not prefix:
        return name
    return posixpath.normpath(posixpath.join(prefix, name))


class S3Uploader:
    def __init__(self, *, client: Any, bucket: str, logger: logging.Logger = LOGGER) -> None:
        self.client = client
        self.bucket = bucket
        self.logger = logger

    @classmethod
    def from_target(cls, target: ObjectStoreTarget, *, logger: logging.Logger = LOGGER) -> S3Uploader:
        return cls(client=build_s3_client(target), bucket=target.bucket_name.strip(), logger=logger)

    def upload(self, path: Path, key: str) -> str:
        try:
            with path.open("rb") as file_handle:
                self.client.put_object(Bucket=self.bucket, Key=key, Body=file_handle)
        except ClientError as error:
            details = error.response.get("Error", {}) if hasattr(error, "response") else {}
            code = details.get("Code", "unknown")
            message = details.get("Message") or str(error)
            raise UploadError(f"failed to upload {path.name} to s3://{self.bucket}/{key}: {code} ({message})") from error
        except (BotoCoreError, OSError) as error:
            reason = str(error).strip() or error.__class__.__name__
            raise UploadError(f"failed to upload {path.name} to s3://{self.bucket}/{key}: {reason}") from error

        self.logger.info("Uploaded '%s' to s3://%s/%s", path.name, self.bucket, key)
        return f"s3://{self.bucket}/{key}"
