import os
import json
from typing import Any, Dict, List, Optional


DATE_TOKEN = '[DATE]'


class ConfigurationError(Exception):
    """Raised when the backup configuration is missing or invalid."""
    pass


class Config:
    """Base configuration"""

    DEBUG = False

    # Logging
    LOG_DIR = os.environ.get('GFS_BACKUP_LOG_DIR') or '/var/log/gfs-backup'
    LOG_FILE_MAX_BYTES = 10485760  # 10MB
    LOG_FILE_BACKUP_COUNT = 10


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
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
    """Select a process configuration class, by name or from GFS_BACKUP_ENV."""
    if config_name is None:
        config_name = os.environ.get('GFS_BACKUP_ENV', 'default')

    if config_name not in config:
        raise ConfigurationError(
            f"Unknown environment: {config_name}. Valid options: {list(config.keys())}"
        )

    return config[config_name]


# Nested structure of settings that must be present in a backup config file
REQUIRED_PARAMETERS = {
    'db': {
        'user': {},
        'pass': {},
        'name': {},
        'port': {},
        'backup_dest': {},
        'backup_file_format': {},
    },
    'files': {
        'source': {},
        'backup_dest': {},
        'backup_file_format': {},
    },
    'local': {
        'num': {
            'daily': {},
            'weekly': {},
            'monthly': {},
        },
    },
    's3': {
        'num': {
            'daily': {},
            'weekly': {},
            'monthly': {},
        },
        'access_key_id': {},
        'secret_access_key': {},
        'bucket': {},
        'db_prefix': {},
        'files_prefix': {},
    },
}

DEFAULT_REGION = 'us-east-1'


class BackupConfig:
    """
    Validated backup settings loaded from a JSON config file.

    Sections are kept as plain dicts; the accessors below apply defaults
    for the optional settings.
    """

    def __init__(self, data: Dict[str, Any]):
        self.data = data

    @property
    def db(self) -> Dict[str, Any]:
        return self.data['db']

    @property
    def files(self) -> Dict[str, Any]:
        return self.data['files']

    @property
    def s3(self) -> Dict[str, Any]:
        return self.data['s3']

    @property
    def local_num(self) -> Dict[str, int]:
        return self.data['local']['num']

    @property
    def remote_num(self) -> Dict[str, int]:
        return self.data['s3']['num']

    @property
    def region(self) -> str:
        return self.s3.get('region') or DEFAULT_REGION

    @property
    def endpoint(self) -> Optional[str]:
        return self.s3.get('endpoint') or None

    @property
    def encryption(self) -> Dict[str, Any]:
        return self.data.get('encryption') or {}

    @property
    def retry(self) -> Dict[str, Any]:
        return self.data.get('retry') or {}

    def prefix_for(self, kind: str) -> str:
        """S3 key prefix of a backup kind ('database' or 'files')."""
        return self.s3['db_prefix'] if kind == 'database' else self.s3['files_prefix']


def _get_path(data: Dict[str, Any], path: List[str]):
    value = data
    for key in path:
        if not isinstance(value, dict) or key not in value:
            return None
        value = value[key]
    return value


def _verify_required(prefix: List[str], required: Dict[str, Any], data: Dict[str, Any]):
    if prefix:
        value = _get_path(data, prefix)
        if value is None or value == '':
            raise ConfigurationError(f"The config file must have a value for: {'.'.join(prefix)}")

    for key, sub_required in required.items():
        _verify_required(prefix + [key], sub_required, data)


def _verify_count(data: Dict[str, Any], path: List[str]):
    value = _get_path(data, path)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigurationError(
            f"Config parameter {'.'.join(path)} must be a non-negative integer, got: {value!r}"
        )


def _verify_name_format(data: Dict[str, Any], path: List[str]):
    value = _get_path(data, path)
    if not isinstance(value, str) or value.count(DATE_TOKEN) != 1:
        raise ConfigurationError(
            f"Config parameter {'.'.join(path)} must contain {DATE_TOKEN} exactly once in its value."
        )


def verify_config(data: Dict[str, Any]) -> BackupConfig:
    """
    Validate raw backup settings.

    Args:
        data: Parsed JSON config

    Returns:
        BackupConfig wrapping the validated settings

    Raises:
        ConfigurationError: If a required setting is missing or invalid
    """
    if not isinstance(data, dict):
        raise ConfigurationError("The config file must contain a JSON object.")

    _verify_required([], REQUIRED_PARAMETERS, data)

    for section in ('local', 's3'):
        for generation in ('daily', 'weekly', 'monthly'):
            _verify_count(data, [section, 'num', generation])

    _verify_name_format(data, ['db', 'backup_file_format'])
    _verify_name_format(data, ['files', 'backup_file_format'])

    if data['db']['backup_file_format'] == data['files']['backup_file_format']:
        raise ConfigurationError(
            'Config parameters db.backup_file_format and files.backup_file_format cannot have the same value.'
        )

    retry = data.get('retry') or {}
    if 'max_attempts' in retry:
        max_attempts = retry['max_attempts']
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
            raise ConfigurationError('Config parameter retry.max_attempts must be a positive integer.')
    for key in ('initial_backoff', 'max_backoff'):
        if key in retry:
            value = retry[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ConfigurationError(f"Config parameter retry.{key} must be a non-negative number.")

    return BackupConfig(data)


def load_config(config_file: str) -> BackupConfig:
    """
    Read and validate a JSON backup config file.

    Args:
        config_file: Path to the config file

    Returns:
        Validated BackupConfig

    Raises:
        ConfigurationError: If the file cannot be read or is invalid
    """
    try:
        with open(config_file, 'r') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Could not read config file {config_file}: {e}") from e

    return verify_config(data)
