import logging
import logging.config
import os
import re
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/tmp/stellar-facade.log")

# Stellar secret seeds: 'S' followed by 55 base32 characters
SECRET_SEED = re.compile(r"\bS[A-Z2-7]{55}\b")
REDACTED = "S***REDACTED***"


class RedactSecretsFilter(logging.Filter):
    """Scrub secret seeds out of every record before a handler formats it."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if SECRET_SEED.search(message):
            record.msg = SECRET_SEED.sub(REDACTED, message)
            record.args = None
        return True


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "redact_secrets": {"()": RedactSecretsFilter},
    },
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "filters": ["redact_secrets"],
            "stream": sys.stdout,
        },
        "file": {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filters": ["redact_secrets"],
            "filename": LOG_FILE,
            "mode": "a",
        },
    },
    "loggers": {
        "stellar_facade": {
            "level": LOG_LEVEL,
            "handlers": ["console", "file"],
            "propagate": False, # Don't pass 'stellar_facade' logs up to the root logger
        },
        # Shut the log levels for libraries up
        "fastapi": {
            "level": "INFO",
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "uvicorn.access": {
             "level": "WARNING", # Quiets the noisy access logs
             "handlers": ["console", "file"],
             "propagate": False,
        },
        "httpx": {
            "level": "WARNING", # request lines carry friendbot/horizon URLs only
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "stellar_sdk": {
            "level": "WARNING",
            "handlers": ["console", "file"],
            "propagate": False,
        },
    },
    # Default for all other loggers
    "root": {
        "level": "WARNING",
        "handlers": ["console", "file"],
    },
}

def setup_logging():
    """ Apply the logging configuration. """
    logging.config.dictConfig(LOGGING_CONFIG)
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
