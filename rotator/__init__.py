import os
import logging
import tempfile
from logging.handlers import RotatingFileHandler


def configure_logging(settings):
    """Configure application logging"""

    # Create logs directory if it doesn't exist, else log to the temp directory
    log_dir = settings['LOG_DIR']
    log_dir_error = None
    try:
        os.makedirs(log_dir, exist_ok=True)
    except OSError as e:
        log_dir_error = e
        log_dir = tempfile.gettempdir()

    # Set log level based on environment
    log_level = logging.DEBUG if settings.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    handlers = [console_handler]

    # Application log, separate from the per-run job logs
    app_log = os.path.join(log_dir, f"{settings.get('TOOL_NAME', 'rotator')}-app.log")
    file_error = None
    try:
        file_handler = RotatingFileHandler(
            app_log,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
    except OSError as e:
        file_error = e
    else:
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # Quiet chatty third-party loggers
    for name in ('botocore', 'boto3', 's3transfer', 'paramiko', 'apscheduler.executors'):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    if log_dir_error is not None:
        logger.warning(f"Cannot create log directory {settings['LOG_DIR']} ({log_dir_error}), using {log_dir}")
    if file_error is not None:
        logger.warning(f"Cannot open application log {app_log}: {file_error}")
    logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")
