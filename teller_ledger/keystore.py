"""
Key Protection Module

Obtains the long-lived AES-256 data key for field encryption. The key only
ever touches disk in sealed form; sealing is bound to the operating user's
identity through a pluggable KeySealer so the backend (OS credential vault,
HSM, KMS) can change without touching the cipher or the record store.
"""

import os
import base64
import getpass
import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

import keyring
from keyring.errors import KeyringError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .encryption import KEY_SIZE, NONCE_SIZE

logger = logging.getLogger(__name__)


SEALED_BLOB_MAGIC = b"TLK1"


class KeyUnavailable(Exception):
    """Raised when the data key cannot be unsealed or created"""
    pass


class KeySealer(ABC):
    """Identity-bound protection for key material"""

    @abstractmethod
    def seal(self, data: bytes) -> bytes:
        """Wrap data so only the same identity can unwrap it"""
        pass

    @abstractmethod
    def unseal(self, blob: bytes) -> bytes:
        """Unwrap a blob produced by seal()"""
        pass


class KeyringSealer(KeySealer):
    """
    Seals key material under a wrapping key held in the user's OS credential vault.

    The wrapping key lives in the keyring entry (service, username) where the
    username defaults to the executing OS user, so a blob copied to another
    account cannot be unsealed there.
    """

    def __init__(self, service_name: str = "teller-ledger", username: Optional[str] = None):
        self.service_name = service_name
        self.username = username or getpass.getuser()

    def _load_wrapping_key(self) -> Optional[bytes]:
        try:
            encoded = keyring.get_password(self.service_name, self.username)
        except KeyringError as e:
            raise KeyUnavailable(f"Credential vault unavailable: {e}") from e
        if encoded is None:
            return None

        try:
            wrapping_key = base64.b64decode(encoded, validate=True)
        except ValueError as e:
            raise KeyUnavailable("Wrapping key in credential vault is corrupted") from e
        if len(wrapping_key) != KEY_SIZE:
            raise KeyUnavailable("Wrapping key in credential vault has wrong length")
        return wrapping_key

    def _create_wrapping_key(self) -> bytes:
        wrapping_key = os.urandom(KEY_SIZE)
        try:
            keyring.set_password(
                self.service_name,
                self.username,
                base64.b64encode(wrapping_key).decode('ascii'),
            )
        except KeyringError as e:
            raise KeyUnavailable(f"Credential vault unavailable: {e}") from e
        logger.info(f"Created wrapping key in credential vault for service {self.service_name}")
        return wrapping_key

    def seal(self, data: bytes) -> bytes:
        """Encrypt data under the vault wrapping key, creating it if absent"""
        wrapping_key = self._load_wrapping_key() or self._create_wrapping_key()
        nonce = os.urandom(NONCE_SIZE)
        sealed = AESGCM(wrapping_key).encrypt(nonce, data, SEALED_BLOB_MAGIC)
        return SEALED_BLOB_MAGIC + nonce + sealed

    def unseal(self, blob: bytes) -> bytes:
        """Decrypt a sealed blob; never creates a wrapping key"""
        if not blob.startswith(SEALED_BLOB_MAGIC):
            raise KeyUnavailable("Sealed key blob has an unknown format")

        wrapping_key = self._load_wrapping_key()
        if wrapping_key is None:
            raise KeyUnavailable(
                f"No wrapping key for user {self.username} in credential vault"
            )

        body = blob[len(SEALED_BLOB_MAGIC):]
        nonce, sealed = body[:NONCE_SIZE], body[NONCE_SIZE:]
        try:
            return AESGCM(wrapping_key).decrypt(nonce, sealed, SEALED_BLOB_MAGIC)
        except InvalidTag as e:
            raise KeyUnavailable("Sealed key blob failed to unseal") from e


class KeyProtector:
    """Loads the sealed data key from disk, or creates and seals a new one"""

    def __init__(self, key_file_path: Union[str, Path], sealer: KeySealer):
        self.key_file_path = Path(key_file_path)
        self.sealer = sealer

    @classmethod
    def from_config(cls, config=None) -> 'KeyProtector':
        """Build a protector from LedgerConfig settings"""
        if config is None:
            from .config import get_config
            config = get_config()
        return cls(config.key_file_path, KeyringSealer(config.keyring_service))

    def get_or_create_key(self) -> bytes:
        """
        Return the 32-byte data key.

        Raises:
            KeyUnavailable: if the existing blob cannot be unsealed, or a new
                key cannot be sealed and persisted
        """
        if self.key_file_path.exists():
            return self._unseal_existing()
        return self._create_and_seal()

    def _unseal_existing(self) -> bytes:
        try:
            blob = self.key_file_path.read_bytes()
        except OSError as e:
            raise KeyUnavailable(f"Cannot read sealed key file: {e}") from e

        try:
            key = self.sealer.unseal(blob)
        except KeyUnavailable:
            raise
        except Exception as e:
            raise KeyUnavailable(f"Sealed key blob failed to unseal: {e}") from e

        if len(key) != KEY_SIZE:
            raise KeyUnavailable("Unsealed key has wrong length")

        logger.info(f"Unsealed data key from {self.key_file_path}")
        return key

    def _create_and_seal(self) -> bytes:
        key = os.urandom(KEY_SIZE)

        try:
            blob = self.sealer.seal(key)
        except KeyUnavailable:
            raise
        except Exception as e:
            raise KeyUnavailable(f"Cannot seal new data key: {e}") from e

        try:
            self.key_file_path.parent.mkdir(parents=True, exist_ok=True)
            # mkstemp creates the file owner-only (0o600)
            fd, temp_path = tempfile.mkstemp(
                dir=self.key_file_path.parent, prefix=".key-", suffix=".tmp"
            )
        except OSError as e:
            raise KeyUnavailable(f"Cannot persist sealed key file: {e}") from e

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(blob)
                f.flush()
                os.fsync(f.fileno())
            # Linking a complete file never overwrites an existing blob
            os.link(temp_path, self.key_file_path)
        except FileExistsError:
            # Another process created the blob first; use theirs
            return self._unseal_existing()
        except OSError as e:
            raise KeyUnavailable(f"Cannot persist sealed key file: {e}") from e
        finally:
            try:
                os.unlink(temp_path)
            except OSError:
                logger.warning(f"Could not remove temporary key file {temp_path}")

        logger.info(f"Created and sealed new data key at {self.key_file_path}")
        return key
