import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '0.1.0'


def configure_logging(level=None, log_dir=None, config_name=None):
    """Configure package logging"""

    from dbkp.config import config
    from dbkp.errors import ConfigurationError
    config_name = config_name or os.environ.get('DBKP_ENV', 'default')
    if config_name not in config:
        raise ConfigurationError(
            f"Unknown configuration: {config_name}. Valid options: {sorted(config)}"
        )
    settings = config[config_name]

    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    log_dir = log_dir or settings.LOG_DIR

    handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers.append(console_handler)

    # File handler
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'dbkp.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    package_logger = logging.getLogger(__name__)
    package_logger.setLevel(log_level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        package_logger.addHandler(handler)

    # paramiko is chatty at INFO
    logging.getLogger('paramiko').setLevel(max(log_level, logging.WARNING))

    package_logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return package_logger
