"""Logging configuration shared by the HTTP app and the CLI."""

from __future__ import annotations

import logging
import os

JSON_LOG_FORMAT = '{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","message":"%(message)s"}'


def configure_logging(level: int = logging.INFO) -> None:
    if os.getenv("LOG_JSON", "true").lower() == "true":
        logging.basicConfig(level=level, format=JSON_LOG_FORMAT)
    else:
        logging.basicConfig(level=level)
