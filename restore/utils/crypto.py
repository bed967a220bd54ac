"""
Envelope encryption for backup archives.

Each artifact gets a random 256-bit data encryption key (DEK). The DEK is
wrapped with AES-256-GCM under a key encryption key (KEK) derived from the
user's password with PBKDF2-HMAC-SHA256, and stored in a sidecar metadata
file; the password and the raw DEK are never written anywhere.

Encrypted container layout:

    [12-byte base IV]
    repeated until EOF:
        [4-byte little-endian plaintext length][16-byte GCM tag][ciphertext]

Chunk i is encrypted under the base IV with i added (mod 2**64) to its last
8 bytes, read as a big-endian integer. Wrapped DEK blob: IV || tag || ciphertext.
"""

import os
import base64
import json
import logging
import struct
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from restore.exceptions import AuthenticationError, BackupIOError, ConfigurationError, NotFoundError

logger = logging.getLogger(__name__)

KEY_SIZE_BYTES = 32
SALT_SIZE_BYTES = 32
IV_SIZE_BYTES = 12
TAG_SIZE_BYTES = 16
CHUNK_SIZE_BYTES = 1024 * 1024
DEFAULT_ITERATIONS = 100000
MIN_PASSWORD_LENGTH = 8

ALGORITHM = 'AES-256-GCM'
FORMAT_VERSION = 2
LEGACY_FORMAT_VERSION = 1  # single GCM message: IV || tag || ciphertext

ENCRYPTED_SUFFIX = '.enc'
METADATA_SUFFIX = '.meta'  # sidecar: <artifact>.enc.meta

VERIFICATION_TEXT = 'ReStore_Password_Verification_Token'

_LENGTH_PREFIX = struct.Struct('<I')


class DecryptionError(AuthenticationError):
    """Raised when a GCM tag fails to verify: wrong password or tampered data."""
    pass


@dataclass
class EncryptionMetadata:
    """Everything needed to unwrap the DEK and re-derive chunk IVs."""
    salt: bytes
    iv: bytes
    encrypted_dek: bytes
    algorithm: str = ALGORITHM
    version: int = FORMAT_VERSION
    key_derivation_iterations: int = DEFAULT_ITERATIONS
    original_size: Optional[int] = None  # plaintext bytes; absent in older sidecars

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'Salt': base64.b64encode(self.salt).decode('ascii'),
            'IV': base64.b64encode(self.iv).decode('ascii'),
            'EncryptedDEK': base64.b64encode(self.encrypted_dek).decode('ascii'),
            'Algorithm': self.algorithm,
            'Version': self.version,
            'KeyDerivationIterations': self.key_derivation_iterations,
        }
        if self.original_size is not None:
            data['OriginalSize'] = self.original_size
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EncryptionMetadata':
        return cls(
            salt=base64.b64decode(data['Salt']),
            iv=base64.b64decode(data['IV']),
            encrypted_dek=base64.b64decode(data['EncryptedDEK']),
            algorithm=data.get('Algorithm', ALGORITHM),
            version=int(data.get('Version', LEGACY_FORMAT_VERSION)),
            key_derivation_iterations=int(data.get('KeyDerivationIterations', DEFAULT_ITERATIONS)),
            original_size=int(data['OriginalSize']) if data.get('OriginalSize') is not None else None,
        )


def derive_chunk_iv(base_iv: bytes, chunk_index: int) -> bytes:
    """Add chunk_index to the last 8 bytes of base_iv, wrapping at 2**64."""
    counter = int.from_bytes(base_iv[4:], 'big')
    counter = (counter + chunk_index) % (1 << 64)
    return base_iv[:4] + counter.to_bytes(8, 'big')


class EncryptionService:
    """Hybrid envelope encryption of single archive files."""

    @staticmethod
    def generate_salt() -> bytes:
        return os.urandom(SALT_SIZE_BYTES)

    @staticmethod
    def decode_salt(salt_b64: str) -> bytes:
        """Decode the base64 salt stored in the encryption settings."""
        try:
            return base64.b64decode(salt_b64, validate=True)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid encryption salt in configuration: {e}")

    @staticmethod
    def derive_key(password: str, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytes:
        """Derive the 32-byte KEK from a password with PBKDF2-HMAC-SHA256."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE_BYTES,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(password.encode('utf-8'))

    def encrypt_file(self, input_path: str, output_path: str, password: str,
                     salt: Optional[bytes] = None,
                     iterations: int = DEFAULT_ITERATIONS) -> EncryptionMetadata:
        """
        Encrypt a file into the chunked container format.

        Args:
            input_path: Plaintext file
            output_path: Destination for the ciphertext container
            password: User password the KEK is derived from
            salt: KEK salt (generated if None)
            iterations: PBKDF2 iteration count

        Returns:
            EncryptionMetadata to persist beside the ciphertext

        Raises:
            BackupIOError: If reading or writing fails
        """
        logger.debug(f"Encrypting file: {os.path.basename(input_path)}")

        if salt is None:
            salt = self.generate_salt()

        kek = self.derive_key(password, salt, iterations)
        dek = os.urandom(KEY_SIZE_BYTES)
        base_iv = os.urandom(IV_SIZE_BYTES)

        encrypted_dek = self._wrap_key(dek, kek)

        try:
            original_size = self._encrypt_stream(input_path, output_path, dek, base_iv)
        except OSError as e:
            self._remove_partial(output_path)
            raise BackupIOError(f"Failed to encrypt {input_path}: {e}") from e

        logger.info(f"File encrypted successfully: {os.path.basename(output_path)}")

        return EncryptionMetadata(
            salt=salt,
            iv=base_iv,
            encrypted_dek=encrypted_dek,
            algorithm=ALGORITHM,
            version=FORMAT_VERSION,
            key_derivation_iterations=iterations,
            original_size=original_size,
        )

    def decrypt_file(self, input_path: str, output_path: str, password: str,
                     metadata: EncryptionMetadata):
        """
        Decrypt a container produced by encrypt_file().

        No plaintext is left at output_path unless every chunk authenticates.

        Raises:
            DecryptionError: Wrong password, tampered or truncated data
            BackupIOError: If reading or writing fails
        """
        logger.debug(f"Decrypting file: {os.path.basename(input_path)}")

        kek = self.derive_key(password, metadata.salt, metadata.key_derivation_iterations)
        try:
            dek = self._unwrap_key(metadata.encrypted_dek, kek)
        except DecryptionError:
            raise DecryptionError("Failed to decrypt DEK. Invalid password.")

        try:
            if metadata.version == LEGACY_FORMAT_VERSION:
                self._decrypt_legacy(input_path, output_path, dek)
            elif metadata.version == FORMAT_VERSION:
                written = self._decrypt_stream(input_path, output_path, dek, metadata.iv)
                if metadata.original_size is not None and written != metadata.original_size:
                    raise DecryptionError(
                        f"Encrypted file is truncated ({written} of {metadata.original_size} bytes)."
                    )
            else:
                raise DecryptionError(f"Unsupported encryption format version: {metadata.version}")
        except DecryptionError:
            self._remove_partial(output_path)
            raise
        except OSError as e:
            self._remove_partial(output_path)
            raise BackupIOError(f"Failed to decrypt {input_path}: {e}") from e

        logger.info(f"File decrypted successfully: {os.path.basename(output_path)}")

    def _encrypt_stream(self, input_path: str, output_path: str, dek: bytes, base_iv: bytes):
        aesgcm = AESGCM(dek)
        with open(input_path, 'rb') as src, open(output_path, 'wb') as dst:
            dst.write(base_iv)
            chunk_index = 0
            total = 0
            while True:
                chunk = src.read(CHUNK_SIZE_BYTES)
                if not chunk:
                    break
                sealed = aesgcm.encrypt(derive_chunk_iv(base_iv, chunk_index), chunk, None)
                ciphertext, tag = sealed[:-TAG_SIZE_BYTES], sealed[-TAG_SIZE_BYTES:]
                dst.write(_LENGTH_PREFIX.pack(len(chunk)))
                dst.write(tag)
                dst.write(ciphertext)
                chunk_index += 1
                total += len(chunk)
        return total

    def _decrypt_stream(self, input_path: str, output_path: str, dek: bytes, expected_iv: bytes):
        aesgcm = AESGCM(dek)
        with open(input_path, 'rb') as src, open(output_path, 'wb') as dst:
            base_iv = src.read(IV_SIZE_BYTES)
            if len(base_iv) != IV_SIZE_BYTES:
                raise DecryptionError("Encrypted file is truncated (missing IV).")
            if expected_iv and base_iv != expected_iv:
                raise DecryptionError("Encrypted file IV does not match its metadata.")

            chunk_index = 0
            total = 0
            while True:
                prefix = src.read(_LENGTH_PREFIX.size)
                if not prefix:
                    break
                if len(prefix) != _LENGTH_PREFIX.size:
                    raise DecryptionError("Encrypted file is truncated (chunk header).")

                (length,) = _LENGTH_PREFIX.unpack(prefix)
                if length > CHUNK_SIZE_BYTES:
                    raise DecryptionError(f"Invalid chunk length {length} at chunk {chunk_index}.")

                tag = src.read(TAG_SIZE_BYTES)
                ciphertext = src.read(length)
                if len(tag) != TAG_SIZE_BYTES or len(ciphertext) != length:
                    raise DecryptionError("Encrypted file is truncated (chunk body).")

                try:
                    plaintext = aesgcm.decrypt(derive_chunk_iv(base_iv, chunk_index), ciphertext + tag, None)
                except InvalidTag:
                    raise DecryptionError(
                        f"Decryption failed at chunk {chunk_index}. Invalid password or corrupted data."
                    )

                dst.write(plaintext)
                chunk_index += 1
                total += len(plaintext)
        return total

    def _decrypt_legacy(self, input_path: str, output_path: str, dek: bytes):
        with open(input_path, 'rb') as src:
            data = src.read()
        if len(data) < IV_SIZE_BYTES + TAG_SIZE_BYTES:
            raise DecryptionError("Encrypted file is truncated.")

        iv = data[:IV_SIZE_BYTES]
        tag = data[IV_SIZE_BYTES:IV_SIZE_BYTES + TAG_SIZE_BYTES]
        ciphertext = data[IV_SIZE_BYTES + TAG_SIZE_BYTES:]
        try:
            plaintext = AESGCM(dek).decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            raise DecryptionError("Decryption failed. Invalid password or corrupted data.")

        with open(output_path, 'wb') as dst:
            dst.write(plaintext)

    @staticmethod
    def _wrap_key(dek: bytes, kek: bytes) -> bytes:
        iv = os.urandom(IV_SIZE_BYTES)
        sealed = AESGCM(kek).encrypt(iv, dek, None)
        return iv + sealed[-TAG_SIZE_BYTES:] + sealed[:-TAG_SIZE_BYTES]

    @staticmethod
    def _unwrap_key(blob: bytes, kek: bytes) -> bytes:
        if len(blob) <= IV_SIZE_BYTES + TAG_SIZE_BYTES:
            raise DecryptionError("Wrapped key is truncated.")
        iv = blob[:IV_SIZE_BYTES]
        tag = blob[IV_SIZE_BYTES:IV_SIZE_BYTES + TAG_SIZE_BYTES]
        ciphertext = blob[IV_SIZE_BYTES + TAG_SIZE_BYTES:]
        try:
            return AESGCM(kek).decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            raise DecryptionError("Failed to unwrap key.")

    @staticmethod
    def _remove_partial(path: str):
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as e:
                logger.warning(f"Failed to remove partial output {path}: {e}")

    # ------------------------------------------------------------------
    # Metadata sidecar
    # ------------------------------------------------------------------

    @staticmethod
    def save_metadata(metadata: EncryptionMetadata, metadata_path: str):
        try:
            with open(metadata_path, 'w', encoding='utf-8') as f:
                json.dump(metadata.to_dict(), f, indent=2)
        except OSError as e:
            raise BackupIOError(f"Failed to write encryption metadata {metadata_path}: {e}") from e

    @staticmethod
    def load_metadata(metadata_path: str) -> EncryptionMetadata:
        """
        Raises:
            NotFoundError: If the sidecar does not exist
            DecryptionError: If it cannot be parsed
        """
        if not os.path.exists(metadata_path):
            raise NotFoundError(f"Encryption metadata not found: {metadata_path}")

        try:
            with open(metadata_path, 'r', encoding='utf-8') as f:
                return EncryptionMetadata.from_dict(json.load(f))
        except (ValueError, KeyError, TypeError) as e:
            raise DecryptionError(f"Failed to parse encryption metadata: {e}")

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    @staticmethod
    def validate_password(password: Optional[str]) -> bool:
        if not password or not password.strip():
            return False

        if len(password) < MIN_PASSWORD_LENGTH:
            logger.warning(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
            return False

        return True

    def create_password_verification_token(self, password: str, salt: bytes,
                                           iterations: int = DEFAULT_ITERATIONS) -> str:
        """Encrypt a fixed canary under the password's KEK; returns base64."""
        kek = self.derive_key(password, salt, iterations)
        iv = os.urandom(IV_SIZE_BYTES)
        sealed = AESGCM(kek).encrypt(iv, VERIFICATION_TEXT.encode('utf-8'), None)
        combined = iv + sealed[-TAG_SIZE_BYTES:] + sealed[:-TAG_SIZE_BYTES]
        return base64.b64encode(combined).decode('ascii')

    def verify_password(self, password: str, salt: bytes, verification_token: str,
                        iterations: int = DEFAULT_ITERATIONS) -> bool:
        """Check a password against a verification token without touching any DEK."""
        try:
            kek = self.derive_key(password, salt, iterations)
            combined = base64.b64decode(verification_token)
            plaintext = self._unwrap_key(combined, kek)
            return plaintext.decode('utf-8') == VERIFICATION_TEXT
        except DecryptionError:
            logger.warning("Password verification failed: incorrect password")
            return False
        except (ValueError, UnicodeDecodeError) as e:
            logger.error(f"Password verification error: {e}")
            return False
