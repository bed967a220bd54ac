import os
import json
import logging
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from restore.exceptions import ConfigurationError
from restore.models import BackupType

logger = logging.getLogger(__name__)


class Config:
    """Base configuration"""

    # Data root
    RESTORE_HOME = os.path.expanduser(os.environ.get('RESTORE_HOME') or os.path.join('~', 'ReStore'))

    # Files
    CONFIG_FILE = os.environ.get('RESTORE_CONFIG_FILE') or os.path.join(RESTORE_HOME, 'config', 'config.json')
    STATE_FILE = os.environ.get('RESTORE_STATE_FILE') or os.path.join(RESTORE_HOME, 'state', 'system_state.json')

    # Temp/Logs
    TEMP_DIR = os.environ.get('TEMP_DIR') or os.path.join(tempfile.gettempdir(), 'restore')
    LOG_DIR = os.environ.get('RESTORE_LOG_DIR') or os.path.join(RESTORE_HOME, 'logs')

    DEBUG = False


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    CONFIG_FILE = os.path.join(DATA_DIR, 'config', 'config.json')
    STATE_FILE = os.path.join(DATA_DIR, 'state', 'system_state.json')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def get_config(config_name: Optional[str] = None):
    """Resolve a configuration class by name (defaults to RESTORE_ENV)."""
    if config_name is None:
        config_name = os.environ.get('RESTORE_ENV', 'default')
    return config.get(config_name, ProductionConfig)


@dataclass
class WatchDirectoryConfig:
    path: str
    storage_type: Optional[str] = None


@dataclass
class StorageConfig:
    path: str = ''
    options: Dict[str, str] = field(default_factory=dict)


@dataclass
class EncryptionConfig:
    enabled: bool = False
    salt: Optional[str] = None  # base64
    key_derivation_iterations: int = 1_000_000
    verification_token: Optional[str] = None


@dataclass
class RetentionConfig:
    enabled: bool = False
    keep_last_per_directory: int = 10
    max_age_days: int = 30


DEFAULT_EXCLUDED_PATTERNS = [
    '*.tmp', '*.temp', '~$*', 'Thumbs.db', 'desktop.ini', '.DS_Store',
]


@dataclass
class Settings:
    """
    User settings loaded from config.json.

    Keys in the JSON document are camelCase; see load_settings().
    """
    watch_directories: List[WatchDirectoryConfig] = field(default_factory=list)
    global_storage_type: str = 'local'
    backup_interval: int = 3600  # seconds
    size_threshold_mb: int = 500
    storage_sources: Dict[str, StorageConfig] = field(default_factory=dict)
    excluded_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_PATTERNS))
    excluded_paths: List[str] = field(default_factory=list)
    backup_type: BackupType = BackupType.INCREMENTAL
    max_file_size_mb: int = 100
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)

    def storage_type_for_directory(self, directory: str) -> str:
        """Return the storage configured for a watch directory, or the global default."""
        normalized = _normalize_directory(directory)
        for watch in self.watch_directories:
            if _normalize_directory(watch.path).casefold() == normalized.casefold():
                return watch.storage_type or self.global_storage_type
        return self.global_storage_type

    def create_storage(self, storage_type: str):
        """
        Build and initialize the storage backend registered as storage_type.

        Raises:
            ConfigurationError: If no storage source with that name exists
        """
        from restore.backup.storage import create_storage

        source = self.storage_sources.get(storage_type)
        if source is None:
            lowered = storage_type.lower()
            source = next(
                (s for name, s in self.storage_sources.items() if name.lower() == lowered),
                None
            )
        if source is None:
            raise ConfigurationError(f"Storage type '{storage_type}' not found in configuration")

        options = dict(source.options)
        if source.path and 'path' not in options:
            options['path'] = source.path

        return create_storage(storage_type, options)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'watchDirectories': [
                {'path': w.path, 'storageType': w.storage_type} for w in self.watch_directories
            ],
            'globalStorageType': self.global_storage_type,
            'backupInterval': self.backup_interval,
            'sizeThresholdMB': self.size_threshold_mb,
            'maxFileSizeMB': self.max_file_size_mb,
            'backupType': self.backup_type.value,
            'retention': {
                'enabled': self.retention.enabled,
                'keepLastPerDirectory': self.retention.keep_last_per_directory,
                'maxAgeDays': self.retention.max_age_days,
            },
            'encryption': {
                'enabled': self.encryption.enabled,
                'salt': self.encryption.salt,
                'keyDerivationIterations': self.encryption.key_derivation_iterations,
                'verificationToken': self.encryption.verification_token,
            },
            'excludedPatterns': self.excluded_patterns,
            'excludedPaths': self.excluded_paths,
            'storageSources': {
                name: {'path': s.path, 'options': s.options}
                for name, s in self.storage_sources.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Settings':
        settings = cls()

        settings.watch_directories = []
        for entry in data.get('watchDirectories', []):
            if isinstance(entry, str):
                # Legacy format: just a string path
                settings.watch_directories.append(WatchDirectoryConfig(path=_expand(entry)))
            elif isinstance(entry, dict):
                settings.watch_directories.append(WatchDirectoryConfig(
                    path=_expand(entry.get('path', '')),
                    storage_type=entry.get('storageType'),
                ))

        settings.storage_sources = {
            name: StorageConfig(
                path=_expand(source.get('path', '')),
                options={k: _expand(str(v)) for k, v in (source.get('options') or {}).items()},
            )
            for name, source in (data.get('storageSources') or {}).items()
        }

        # Load global storage type AFTER storage sources so the fallback works
        settings.global_storage_type = (
            data.get('globalStorageType')
            or next(iter(settings.storage_sources), None)
            or 'local'
        )

        settings.backup_interval = int(data.get('backupInterval', settings.backup_interval))
        settings.size_threshold_mb = int(data.get('sizeThresholdMB', settings.size_threshold_mb))
        settings.max_file_size_mb = int(data.get('maxFileSizeMB', settings.max_file_size_mb))

        if 'excludedPatterns' in data:
            settings.excluded_patterns = list(data['excludedPatterns'] or [])
        if 'excludedPaths' in data:
            settings.excluded_paths = [_expand(p) for p in data['excludedPaths'] or []]
        if 'backupType' in data:
            settings.backup_type = BackupType.parse(data['backupType'])

        encryption = data.get('encryption') or {}
        settings.encryption = EncryptionConfig(
            enabled=bool(encryption.get('enabled', False)),
            salt=encryption.get('salt'),
            key_derivation_iterations=int(encryption.get('keyDerivationIterations', 1_000_000)),
            verification_token=encryption.get('verificationToken'),
        )

        retention = data.get('retention') or {}
        settings.retention = RetentionConfig(
            enabled=bool(retention.get('enabled', False)),
            keep_last_per_directory=int(retention.get('keepLastPerDirectory', 10)),
            max_age_days=int(retention.get('maxAgeDays', 30)),
        )

        return settings


def _expand(value: str) -> str:
    return os.path.expandvars(os.path.expanduser(value)) if value else value


def _normalize_directory(directory: str) -> str:
    return os.path.abspath(_expand(directory)).rstrip('/\\') or os.sep


def default_settings() -> Settings:
    """Settings written on first run: back up Documents to a local folder."""
    home = os.path.expanduser('~')
    return Settings(
        watch_directories=[WatchDirectoryConfig(path=os.path.join(home, 'Documents'))],
        global_storage_type='local',
        storage_sources={
            'local': StorageConfig(path=os.path.join(Config.RESTORE_HOME, 'backups')),
        },
    )


def load_settings(config_path: Optional[str] = None) -> Settings:
    """
    Load settings from a JSON config file.

    If the file does not exist and no config.example.json sits beside it, a
    default configuration is written and loaded.

    Raises:
        ConfigurationError: If only an example config exists, or the document
            is malformed
    """
    config_path = config_path or Config.CONFIG_FILE

    if not os.path.exists(config_path):
        example_path = os.path.join(os.path.dirname(config_path), 'config.example.json')
        if os.path.exists(example_path):
            raise ConfigurationError(
                f"Configuration file not found at: {config_path}\n"
                f"An example configuration exists at: {example_path}\n"
                "Please rename it to 'config.json' and configure your backup settings."
            )
        logger.info(f"Configuration not found, creating default at {config_path}")
        save_settings(default_settings(), config_path)

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        settings = Settings.from_dict(data)
    except (OSError, ValueError, TypeError, AttributeError) as e:
        raise ConfigurationError(f"Failed to load configuration from {config_path}: {e}") from e

    logger.info("Configuration loaded successfully")
    return settings


def save_settings(settings: Settings, config_path: Optional[str] = None):
    """Write settings to disk atomically."""
    config_path = config_path or Config.CONFIG_FILE
    os.makedirs(os.path.dirname(os.path.abspath(config_path)), exist_ok=True)

    temp_path = config_path + '.tmp'
    with open(temp_path, 'w', encoding='utf-8') as f:
        json.dump(settings.to_dict(), f, indent=2)
    os.replace(temp_path, config_path)

    logger.info("Configuration saved successfully")
