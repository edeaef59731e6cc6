"""
logging_setup.py
~~~~~~~~~~~~~~~~

Logging configuration shared by the training CLI and the API server.
"""

import os
import logging

NOISY_LOGGERS = ['socketio', 'engineio', 'engineio.server',
                 'socketio.server', 'werkzeug']


def configure_logging() -> None:
    """
    Set up logging based on environment.

    - ``LOG_LEVEL`` selects the level (default INFO)
    - In production (``FLASK_ENV=production``) third-party server logs are
      reduced to warnings while digitnet logs stay at INFO
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if is_production:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('digitnet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)
