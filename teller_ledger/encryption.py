"""
PII Encryption at Rest Module

Provides field-level authenticated encryption for customer PII. Each value is
sealed with AES-256-GCM under a fresh 96-bit nonce and serialized as a
self-describing text token that fits a TEXT column:

    v1:<base64 nonce>:<base64 ciphertext>:<base64 tag>

Values without the version prefix are treated as legacy plaintext and passed
through on decrypt. That keeps rows written before encryption was enabled
readable, but it also means a token stripped of its prefix is read back as
plaintext rather than rejected. Construct the cipher with
``allow_legacy_plaintext=False`` once every row carries a token.
"""

import os
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)


TOKEN_VERSION = "v1"
TOKEN_PREFIX = TOKEN_VERSION + ":"
TOKEN_SEPARATOR = ":"

KEY_SIZE = 32    # AES-256
NONCE_SIZE = 12  # 96-bit GCM nonce
TAG_SIZE = 16    # 128-bit GCM tag


class CryptoError(ValueError):
    """Base class for per-field encryption faults"""
    pass


class InvalidKeyLength(CryptoError):
    """Raised when a cipher is constructed with a key that is not 32 bytes"""
    pass


class MalformedToken(CryptoError):
    """Raised when a token does not have the v1 envelope shape"""
    pass


class AuthenticationFailed(CryptoError):
    """Raised when a token fails GCM tag verification"""
    pass


def is_encrypted_token(value: Optional[str]) -> bool:
    """Check if value carries the versioned token prefix"""
    if not isinstance(value, str):
        return False
    return value.startswith(TOKEN_PREFIX)


def _b64decode(part: str, label: str) -> bytes:
    try:
        return base64.b64decode(part.encode('ascii'), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise MalformedToken(f"Invalid base64 in token {label}") from e


@dataclass(frozen=True)
class EncryptedToken:
    """Parsed v1 token envelope"""
    version: str
    nonce: bytes
    ciphertext: bytes
    tag: bytes

    def serialize(self) -> str:
        """Render the envelope as a delimited text token"""
        return TOKEN_SEPARATOR.join([
            self.version,
            base64.b64encode(self.nonce).decode('ascii'),
            base64.b64encode(self.ciphertext).decode('ascii'),
            base64.b64encode(self.tag).decode('ascii'),
        ])

    @classmethod
    def parse(cls, token: str) -> 'EncryptedToken':
        """
        Parse a serialized token.

        Raises:
            MalformedToken: if the token is not exactly four colon-separated
                parts of the current version with well-formed nonce and tag
        """
        parts = token.split(TOKEN_SEPARATOR)
        if len(parts) != 4 or parts[0] != TOKEN_VERSION:
            raise MalformedToken("Invalid encrypted token format")

        nonce = _b64decode(parts[1], "nonce")
        ciphertext = _b64decode(parts[2], "ciphertext")
        tag = _b64decode(parts[3], "tag")

        if len(nonce) != NONCE_SIZE:
            raise MalformedToken(f"Token nonce must be {NONCE_SIZE} bytes")
        if len(tag) != TAG_SIZE:
            raise MalformedToken(f"Token tag must be {TAG_SIZE} bytes")

        return cls(version=parts[0], nonce=nonce, ciphertext=ciphertext, tag=tag)


class FieldCipher:
    """AES-256-GCM field cipher producing versioned text tokens"""

    def __init__(self, key: bytes, allow_legacy_plaintext: bool = True):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
            raise InvalidKeyLength(f"AES-256 key must be {KEY_SIZE} bytes")

        self._aesgcm = AESGCM(bytes(key))
        self.allow_legacy_plaintext = allow_legacy_plaintext

    def encrypt(self, plaintext: Optional[str]) -> str:
        """Encrypt plaintext into a v1 token"""
        if plaintext is None:
            plaintext = ""

        nonce = os.urandom(NONCE_SIZE)

        # AESGCM appends the tag to the ciphertext
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode('utf-8'), None)
        token = EncryptedToken(
            version=TOKEN_VERSION,
            nonce=nonce,
            ciphertext=sealed[:-TAG_SIZE],
            tag=sealed[-TAG_SIZE:],
        )
        return token.serialize()

    def decrypt(self, token: Optional[str]) -> str:
        """
        Decrypt a token produced by encrypt().

        Blank input yields an empty string. Input without the version prefix
        is returned unchanged when legacy plaintext is allowed.

        Raises:
            MalformedToken: if the value is not text, the token shape is
                invalid, or the value is unprefixed and legacy plaintext is
                not allowed
            AuthenticationFailed: if the tag does not verify
        """
        if token is None:
            return ""
        if not isinstance(token, str):
            raise MalformedToken(f"Stored value is {type(token).__name__}, not text")
        if not token.strip():
            return ""

        if not token.startswith(TOKEN_PREFIX):
            if self.allow_legacy_plaintext:
                return token
            raise MalformedToken("Value is not an encrypted token")

        envelope = EncryptedToken.parse(token)

        try:
            plaintext = self._aesgcm.decrypt(
                envelope.nonce, envelope.ciphertext + envelope.tag, None
            )
        except InvalidTag as e:
            raise AuthenticationFailed("Token failed authentication") from e

        try:
            return plaintext.decode('utf-8')
        except UnicodeDecodeError as e:
            raise AuthenticationFailed("Token plaintext is not valid UTF-8") from e
