import os
import json
import socket


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


def _env_list(name, default):
    value = os.environ.get(name)
    if not value:
        return list(default)
    return [item.strip() for item in value.split(',') if item.strip()]


class Config:
    """Base configuration"""

    TOOL_NAME = 'rotator'
    DEBUG = False

    # Host identifier used as the prefix of every backup set name
    HOST_ID = os.environ.get('ROTATOR_HOST_ID') or os.environ.get('COMPUTERNAME') or socket.gethostname().split('.')[0].upper()

    # Storage
    DATA_DIR = os.environ.get('ROTATOR_DATA_DIR') or '/data'
    BACKUP_ROOT = os.environ.get('ROTATOR_BACKUP_ROOT') or '/data/backups'
    LOG_DIR = os.environ.get('ROTATOR_LOG_DIR') or '/data/logs'
    DATABASE_URL = os.environ.get('ROTATOR_DATABASE_URL') or 'sqlite:////data/rotator.db'

    # Retention counts per tier
    RETENTION_MONTHLY = _env_int('ROTATOR_RETENTION_MONTHLY', 2)
    RETENTION_WEEKLY = _env_int('ROTATOR_RETENTION_WEEKLY', 4)
    RETENTION_DAILY = _env_int('ROTATOR_RETENTION_DAILY', 15)

    # Engine mode per tier: BareMetal (full image) or SystemState
    TIER_MODES = {
        'Monthly': 'BareMetal',
        'Weekly': 'BareMetal',
        'Daily': 'SystemState',
    }
    ENGINE = os.environ.get('ROTATOR_ENGINE') or 'wbadmin'

    # Compression
    COMPRESS_ENABLED = _env_bool('ROTATOR_COMPRESS_ENABLED')
    ARCHIVER = os.environ.get('ROTATOR_ARCHIVER') or '7zip'
    ARCHIVE_FORMAT = os.environ.get('ROTATOR_ARCHIVE_FORMAT') or '7z'
    SEVEN_ZIP_PATH = os.environ.get('ROTATOR_SEVEN_ZIP_PATH') or '7z'

    # Remote synchronization
    SYNC_ENABLED = _env_bool('ROTATOR_SYNC_ENABLED')
    SYNC_METHOD = os.environ.get('ROTATOR_SYNC_METHOD') or 'robocopy'
    SYNC_SERVER = os.environ.get('ROTATOR_SYNC_SERVER')
    SYNC_SHARE = os.environ.get('ROTATOR_SYNC_SHARE')
    SYNC_USERNAME = os.environ.get('ROTATOR_SYNC_USERNAME')
    SYNC_PASSWORD = os.environ.get('ROTATOR_SYNC_PASSWORD')
    SYNC_PORT = _env_int('ROTATOR_SYNC_PORT', 22)
    SYNC_PRIVATE_KEY = os.environ.get('ROTATOR_SYNC_PRIVATE_KEY')
    SYNC_REGION = os.environ.get('ROTATOR_SYNC_REGION') or 'us-east-1'
    SYNC_EXCLUDE = _env_list('ROTATOR_SYNC_EXCLUDE', ['*logs*'])

    # Notification
    NOTIFY_ENABLED = _env_bool('ROTATOR_NOTIFY_ENABLED')
    SMTP_SERVER = os.environ.get('ROTATOR_SMTP_SERVER')
    SMTP_PORT = _env_int('ROTATOR_SMTP_PORT', 587)
    SMTP_USE_TLS = _env_bool('ROTATOR_SMTP_USE_TLS', True)
    SMTP_USERNAME = os.environ.get('ROTATOR_SMTP_USERNAME')
    SMTP_PASSWORD = os.environ.get('ROTATOR_SMTP_PASSWORD')
    MAIL_FROM = os.environ.get('ROTATOR_MAIL_FROM')
    MAIL_TO = _env_list('ROTATOR_MAIL_TO', [])

    # Scheduler
    SCHEDULE_CRON = os.environ.get('ROTATOR_SCHEDULE_CRON') or '0 22 * * *'
    SCHEDULER_TIMEZONE = os.environ.get('ROTATOR_TIMEZONE')

    # Key for 'enc:' secrets in the configuration file
    SECRET_KEY = os.environ.get('ROTATOR_SECRET_KEY')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    BACKUP_ROOT = os.path.join(DATA_DIR, 'backups')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    DATABASE_URL = f'sqlite:///{os.path.join(DATA_DIR, "rotator.db")}'
    ARCHIVER = 'builtin'
    ARCHIVE_FORMAT = 'tar.gz'
    SYNC_METHOD = 'copy'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


class Settings(dict):
    """
    Flat, uppercase-keyed settings mapping.

    Populated from a config class first, then overridden by the keys of an
    optional JSON configuration file.
    """

    def from_object(self, obj):
        """Copy every uppercase attribute of a config class."""
        for key in dir(obj):
            if key.isupper():
                self[key] = getattr(obj, key)

    def from_json(self, path):
        """
        Override settings with the uppercase keys of a JSON file.

        Raises:
            OSError: If the file cannot be read
            ValueError: If the file is not valid JSON or not an object
        """
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        if not isinstance(data, dict):
            raise ValueError(f"Configuration file must contain a JSON object: {path}")

        for key, value in data.items():
            if key.isupper():
                self[key] = value

        self['CONFIG_PATH'] = os.path.abspath(path)


def load_settings(path=None, config_name=None) -> Settings:
    """
    Build the settings for one process.

    Args:
        path: JSON configuration file (defaults to ROTATOR_CONFIG)
        config_name: Key into `config` (defaults to ROTATOR_ENV or 'production')

    Returns:
        Populated Settings
    """
    if config_name is None:
        config_name = os.environ.get('ROTATOR_ENV', 'production')

    settings = Settings()
    settings.from_object(config[config_name])
    settings['CONFIG_PATH'] = None

    path = path or os.environ.get('ROTATOR_CONFIG')
    if path:
        settings.from_json(path)

    return settings
