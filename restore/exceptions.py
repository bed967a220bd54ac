"""
Error taxonomy for ReStore.

Every failure surfaced by the backup and restore pipelines is one of these
kinds. Module-specific errors (StorageError, CompressionError,
DecryptionError) subclass them so callers can catch either level.
"""


class RestoreError(Exception):
    """Base class for all ReStore errors."""
    pass


class ValidationError(RestoreError):
    """Raised for bad arguments, missing sources or unsafe paths."""
    pass


class NotFoundError(RestoreError):
    """Raised when a backup artifact or its base backup cannot be found."""
    pass


class BackupIOError(RestoreError):
    """Raised when a disk or network operation fails."""
    pass


class AuthenticationError(RestoreError):
    """Raised for a wrong password or tampered ciphertext."""
    pass


class ConfigurationError(RestoreError):
    """Raised for unknown storage types, missing credentials or a missing password."""
    pass
