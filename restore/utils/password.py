"""
Password providers used by the backup and restore pipelines.

A provider hands out the encryption password on demand and forgets it when
told to (after a failed decryption) so the next attempt asks again.
"""

import logging
import threading
from getpass import getpass
from typing import Callable, Optional

from restore.exceptions import ConfigurationError
from .crypto import DEFAULT_ITERATIONS, EncryptionService

logger = logging.getLogger(__name__)

MAX_PROMPT_ATTEMPTS = 3


class PasswordProvider:
    """Interface for supplying the encryption password."""

    def get_password(self) -> Optional[str]:
        raise NotImplementedError

    def is_password_set(self) -> bool:
        raise NotImplementedError

    def clear_password(self):
        raise NotImplementedError


class StaticPasswordProvider(PasswordProvider):
    """Always returns the same password. Clearing has no effect."""

    def __init__(self, password: Optional[str]):
        self._password = password

    def get_password(self) -> Optional[str]:
        return self._password

    def is_password_set(self) -> bool:
        return bool(self._password)

    def clear_password(self):
        pass


class PromptPasswordProvider(PasswordProvider):
    """
    Prompts for the password and caches it until cleared.

    When a verification token is configured, a typed password is checked
    against it before being accepted.
    """

    def __init__(self, salt: Optional[str] = None, iterations: int = DEFAULT_ITERATIONS,
                 verification_token: Optional[str] = None,
                 prompt: Callable[[str], str] = getpass):
        """
        Args:
            salt: Base64 KEK salt from the encryption settings
            iterations: PBKDF2 iteration count from the encryption settings
            verification_token: Base64 token from create_password_verification_token()
            prompt: Function used to read the password
        """
        self._salt = EncryptionService.decode_salt(salt) if salt else None
        self._iterations = iterations
        self._verification_token = verification_token
        self._prompt = prompt
        self._encryption = EncryptionService()
        self._cached = None
        self._lock = threading.Lock()

    def get_password(self) -> Optional[str]:
        # Concurrent callers wait for a single prompt
        with self._lock:
            if self._cached:
                return self._cached

            for attempt in range(1, MAX_PROMPT_ATTEMPTS + 1):
                password = self._prompt('Encryption password: ')
                if not password:
                    return None

                if self._is_acceptable(password):
                    self._cached = password
                    return password

                logger.warning(f"Incorrect password (attempt {attempt}/{MAX_PROMPT_ATTEMPTS})")

        raise ConfigurationError(
            f"No valid encryption password after {MAX_PROMPT_ATTEMPTS} attempts"
        )

    def _is_acceptable(self, password: str) -> bool:
        if not self._verification_token or self._salt is None:
            return True
        return self._encryption.verify_password(
            password, self._salt, self._verification_token, self._iterations
        )

    def is_password_set(self) -> bool:
        return self._cached is not None

    def clear_password(self):
        with self._lock:
            self._cached = None
        logger.debug("Cached encryption password cleared")
