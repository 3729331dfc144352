from __future__ import annotations

from pathlib import Path
import logging
from typing import Any, BinaryIO, Protocol

import pyrage

from .config import BackupError, error_message

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class EncryptionError(BackupError):
    """Raised when the recipient key is unusable or the encrypted stream cannot be sealed."""


class Cipher(Protocol):
    def parse_recipient(self, public_key: str) -> Any: ...

    def encrypt_stream(self, source: BinaryIO, sink: BinaryIO, recipient: Any) -> None: ...


class AgeCipher:
    """age X25519 encryption backed by pyrage, written as ASCII armor."""

    def parse_recipient(self, public_key: str) -> pyrage.x25519.Recipient:
        return pyrage.x25519.Recipient.from_str(public_key.strip())

    def encrypt_stream(self, source: BinaryIO, sink: BinaryIO, recipient: pyrage.x25519.Recipient) -> None:
        # encrypt_io finalizes the age stream and the armor footer before returning.
        pyrage.encrypt_io(source, sink, [recipient], armored=True)


class _BoundedReader:
    def __init__(self, source: BinaryIO, chunk_size: int) -> None:
        self._source = source
        self._chunk_size = chunk_size
        self.bytes_read = 0

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0 or size > self._chunk_size:
            size = self._chunk_size
        chunk = self._source.read(size)
        self.bytes_read += len(chunk)
        return chunk


def encrypt_file(
    public_key: str,
    plaintext_path: Path,
    output_path: Path,
    *,
    cipher: Cipher | None = None,
    chunk_size: int = CHUNK_SIZE,
    logger: logging.Logger = LOGGER,
) -> Path:
    cipher = cipher or AgeCipher()
    try:
        recipient = cipher.parse_recipient(public_key)
    except Exception as error:  # pylint: disable=broad-except
        raise EncryptionError(f"failed to parse recipient public key: {error_message(error)}") from error

    sealed = False
    try:
        with plaintext_path.open("rb") as source, output_path.open("wb") as sink:
            reader = _BoundedReader(source, chunk_size)
            cipher.encrypt_stream(reader, sink, recipient)
        sealed = True
    except OSError as error:
        raise EncryptionError(
            f"I/O error while encrypting {plaintext_path.name} to {output_path.name}: {error_message(error)}"
        ) from error
    except Exception as error:  # pylint: disable=broad-except
        raise EncryptionError(f"failed to encrypt {plaintext_path}: {error_message(error)}") from error
    finally:
        if not sealed:
            output_path.unlink(missing_ok=True)

    logger.info("File '%s' encrypted to '%s' (%d plaintext bytes)", plaintext_path.name, output_path.name, reader.bytes_read)
    return output_path
