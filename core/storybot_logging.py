import os
import sys
import logging
from logging.handlers import TimedRotatingFileHandler

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ('uvicorn.access', 'urllib3', 'httpx')


def setup_logging(log_dir='user/logs', level='INFO'):
    """Configure the root logger once at start-up: daily rotating file plus stdout."""
    os.makedirs(log_dir, exist_ok=True)

    # Configure file handler with daily rotation
    file_handler = TimedRotatingFileHandler(
        os.path.join(log_dir, 'storybot.log'),
        when='midnight',
        interval=1,
        backupCount=30,
        encoding='utf-8'
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    # Console handler for terminal output
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    # Remove any existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
