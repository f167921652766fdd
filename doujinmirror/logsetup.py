#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio
import logging
import pathlib
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG = logging.getLogger("doujinmirror")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
NOISY_LOGGERS = ("uvicorn.access", "aiohttp", "botocore", "boto3", "telegram", "httpx", "asyncio")


def setup_logging(log_dir: pathlib.Path, filename: str = "doujinmirror.log") -> None:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / filename

    fmt = logging.Formatter(LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(logging.INFO)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger("doujinmirror").setLevel(logging.DEBUG)

    # Console handler (INFO)
    if not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in root.handlers
    ):
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)
        ch.setFormatter(fmt)
        root.addHandler(ch)

    # Rotating file handler
    file_handler: Optional[RotatingFileHandler] = None
    for handler in root.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", None) == str(log_path):
            file_handler = handler
            break
    if file_handler is None:
        file_handler = RotatingFileHandler(log_path, maxBytes=2 * 1024 * 1024, backupCount=5, encoding="utf-8")
        root.addHandler(file_handler)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    file_handler.filters.clear()
    file_handler.addFilter(logging.Filter("doujinmirror"))


def _log_uncaught(exc_type, exc, tb) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc, tb)
        return
    LOG.critical("Uncaught exception", exc_info=(exc_type, exc, tb))


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exc = context.get("exception")
    message = context.get("message", "Unhandled exception in event loop")
    if exc is not None:
        LOG.error("%s", message, exc_info=exc)
    else:
        LOG.error("%s", message)


def install_exception_hooks(loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
    """Log process-fatal conditions instead of letting them take the server down."""
    sys.excepthook = _log_uncaught
    if loop is not None:
        loop.set_exception_handler(_log_loop_exception)
