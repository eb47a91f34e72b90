"""
logging_config.py — Centralized Logging Configuration for the Delivery Client

This module configures unified logging behavior for the whole client.
Every module logs through the same handlers and format.

Features:
    • Combined console and file logging output
    • Process ID tagging for multi-process visibility
    • Log level and log file selectable through environment variables
    • Reduced verbosity for HTTP libraries (httpx, httpcore, uvicorn access log)
"""

import logging
import os
import sys

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FILE = os.environ.get("DELIVERY_LOG_FILE", "delivery_client.log")


def setup_logging():
    """
    Configures the global logging system for the client.

    The configuration includes:
        - Log level: taken from LOG_LEVEL (default INFO)
        - Log format: timestamp, log level, process ID, logger name and message
        - Output destinations:
            1. File: DELIVERY_LOG_FILE (persistent log, skipped when set to an empty string)
            2. Console (stdout): real-time logs, Docker/Kubernetes compatible
        - Reduced verbosity for third-party HTTP libraries
    """
    log_format = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))

    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format=log_format,
        handlers=handlers
    )

    # Cada requisição do polling geraria uma linha no INFO
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name):
    """
    Returns a logger instance for a given module or component name.

    Args:
        name (str): The logger name, typically the module's __name__.

    Returns:
        logging.Logger: A logger that follows the global format and handlers.
    """
    return logging.getLogger(name)
