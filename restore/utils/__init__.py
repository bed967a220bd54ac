"""
Utilities: envelope encryption and password providers.
"""

from .crypto import EncryptionService, EncryptionMetadata, DecryptionError
from .password import PasswordProvider, StaticPasswordProvider, PromptPasswordProvider

__all__ = [
    'EncryptionService',
    'EncryptionMetadata',
    'DecryptionError',
    'PasswordProvider',
    'StaticPasswordProvider',
    'PromptPasswordProvider',
]
