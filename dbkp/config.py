import os

from dbkp.errors import ConfigurationError


def _env_number(name, default=None, cast=float):
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    try:
        return cast(value)
    except ValueError:
        raise ConfigurationError(f"Invalid value for {name}: {value!r}")


class Config:
    """Base configuration"""

    # Logging
    LOG_LEVEL = os.environ.get('DBKP_LOG_LEVEL') or 'INFO'
    LOG_DIR = os.environ.get('DBKP_LOG_DIR') or None

    # Client utilities ({UTILITIES_DIR}/{engine}/{major}/bin/{name})
    UTILITIES_DIR = os.environ.get('DBKP_UTILITIES_DIR') or None

    # Timeouts (seconds)
    POOL_TIMEOUT = _env_number('DBKP_POOL_TIMEOUT', 30.0)
    COMMAND_TIMEOUT = _env_number('DBKP_COMMAND_TIMEOUT', 300.0)
    TRANSFER_TIMEOUT = _env_number('DBKP_TRANSFER_TIMEOUT')  # None = no limit

    # Connection pool
    POOL_SIZE = 5

    # Streaming
    TRANSFER_CHUNK_SIZE = 16 * 1024
    S3_PART_SIZE = 10 * 1024 * 1024

    # Scheduler
    RETENTION_HOUR = _env_number('DBKP_RETENTION_HOUR', 2, cast=int)
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    LOG_LEVEL = os.environ.get('DBKP_LOG_LEVEL') or 'DEBUG'

    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    LOG_DIR = os.environ.get('DBKP_LOG_DIR') or os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    pass


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
