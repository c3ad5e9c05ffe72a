"""
Profile Encryption Service
AES-256-GCM encryption for stored profile text
"""
import base64
import binascii
import os
from dataclasses import dataclass
from typing import List, Optional, Union
import logging

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from dotenv import load_dotenv

from services.errors import EncryptionKeyError, ProfileDecryptionError

load_dotenv()

logger = logging.getLogger(__name__)

ALGORITHM = "aes-256-gcm"
KEY_LENGTH = 32   # 256 bits
IV_LENGTH = 12    # GCM nonce
TAG_LENGTH = 16
ASSOCIATED_DATA = b"user-profile"
MIN_DISTINCT_KEY_BYTES = 16

KeyInput = Union[str, bytes]


@dataclass(frozen=True)
class EncryptedPayload:
    encrypted_data: str  # base64 ciphertext without the tag
    iv: str              # base64
    tag: str             # base64
    key_version: int
    algorithm: str = ALGORITHM


def _decode_key(key: KeyInput) -> bytes:
    if isinstance(key, (bytes, bytearray)):
        raw = bytes(key)
    elif isinstance(key, str):
        try:
            raw = base64.b64decode(key.strip(), validate=True)
        except (binascii.Error, ValueError):
            raise EncryptionKeyError("Encryption key must be base64 encoded") from None
    else:
        raise EncryptionKeyError("Encryption key must be a base64 string or bytes")

    if len(raw) != KEY_LENGTH:
        raise EncryptionKeyError(f"Encryption key must decode to {KEY_LENGTH} bytes")
    if len(set(raw)) < MIN_DISTINCT_KEY_BYTES:
        raise EncryptionKeyError("Encryption key has too little entropy")
    return raw


def validate_key(key: KeyInput) -> bool:
    try:
        _decode_key(key)
        return True
    except EncryptionKeyError:
        return False


def generate_key() -> str:
    """Generate a random base64-encoded 256-bit key."""
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


class ProfileEncryptionService:
    """Encrypts and decrypts profile text with one key at one key version"""

    def __init__(self, key: Optional[KeyInput] = None, key_version: Optional[int] = None):
        """
        Initialize the service.

        Args:
            key: Base64 key (or raw 32 bytes); defaults to PROFILE_ENCRYPTION_KEY
            key_version: Version stamped on records; defaults to PROFILE_ENCRYPTION_KEY_VERSION

        Raises:
            EncryptionKeyError: If the key is missing or unacceptable
        """
        key = key if key is not None else os.getenv("PROFILE_ENCRYPTION_KEY")
        if not key:
            raise EncryptionKeyError("PROFILE_ENCRYPTION_KEY not found in environment variables")
        self._aesgcm = AESGCM(_decode_key(key))
        self.key_version = int(
            key_version if key_version is not None else os.getenv("PROFILE_ENCRYPTION_KEY_VERSION", "1")
        )

    def encrypt(self, plaintext: str) -> EncryptedPayload:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), ASSOCIATED_DATA)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return EncryptedPayload(
            encrypted_data=base64.b64encode(ciphertext).decode("ascii"),
            iv=base64.b64encode(iv).decode("ascii"),
            tag=base64.b64encode(tag).decode("ascii"),
            key_version=self.key_version,
            algorithm=ALGORITHM,
        )

    def decrypt(self, payload: EncryptedPayload) -> str:
        """
        Decrypt a payload produced under this key and key version.

        Raises:
            ProfileDecryptionError: On any failure; the message never carries details
        """
        if payload.algorithm != ALGORITHM or payload.key_version != self.key_version:
            logger.error(
                f"Profile record key version/algorithm mismatch "
                f"(record v{payload.key_version}, service v{self.key_version})"
            )
            raise ProfileDecryptionError()
        try:
            iv = base64.b64decode(payload.iv, validate=True)
            ciphertext = base64.b64decode(payload.encrypted_data, validate=True)
            tag = base64.b64decode(payload.tag, validate=True)
            if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
                raise ValueError("bad iv/tag length")
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, ASSOCIATED_DATA)
            return plaintext.decode("utf-8")
        except (InvalidTag, binascii.Error, ValueError, TypeError):
            logger.error("Profile decryption failed")
            raise ProfileDecryptionError() from None


def _as_service(key: Union[KeyInput, "ProfileEncryptionService"], key_version: int) -> "ProfileEncryptionService":
    if isinstance(key, ProfileEncryptionService):
        return key
    return ProfileEncryptionService(key, key_version=key_version)


def rotate(
    old_key: Union[KeyInput, "ProfileEncryptionService"],
    new_key: Union[KeyInput, "ProfileEncryptionService"],
    record: EncryptedPayload,
    new_key_version: Optional[int] = None,
) -> EncryptedPayload:
    """
    Re-encrypt ``record`` under ``new_key``. Pure: ``record`` is not modified.

    Args:
        old_key: Key (or service) the record was written with
        new_key: Replacement key, or a service already carrying its version
        record: Existing encrypted record
        new_key_version: Version for the new record when a raw key is given;
            defaults to record version + 1

    Returns:
        New EncryptedPayload

    Raises:
        ProfileDecryptionError: If the record cannot be decrypted with old_key
    """
    old_service = _as_service(old_key, record.key_version)
    version = new_key_version if new_key_version is not None else record.key_version + 1
    new_service = _as_service(new_key, version)
    return new_service.encrypt(old_service.decrypt(record))


def load_keyring(value: Optional[str] = None) -> List[ProfileEncryptionService]:
    """
    Parse decrypt-only keys from PROFILE_ENCRYPTION_KEYRING.

    The format is ``<version>:<base64 key>`` entries separated by commas. Keys
    listed here are only used to read records stamped with their version, so a
    rotation can run while servers still write under the current key.

    Raises:
        EncryptionKeyError: If an entry is malformed; the key is never echoed
    """
    value = value if value is not None else os.getenv("PROFILE_ENCRYPTION_KEYRING", "")
    services: List[ProfileEncryptionService] = []
    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        version, sep, key = entry.partition(":")
        if not sep or not version.strip().isdigit():
            raise EncryptionKeyError("PROFILE_ENCRYPTION_KEYRING entries must be <version>:<base64 key>")
        if not validate_key(key):
            raise EncryptionKeyError(f"Keyring entry for version {version.strip()} is not a usable key")
        services.append(ProfileEncryptionService(key, key_version=int(version)))
    return services
