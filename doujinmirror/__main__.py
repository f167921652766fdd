#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
import os
import pathlib
import sys

import uvicorn

from .api import create_app
from .config import load_settings
from .logsetup import setup_logging

LOG = logging.getLogger("doujinmirror")


def _ensure_browser_binaries() -> None:
    """Point Playwright at browsers shipped next to a frozen executable."""
    if os.getenv("PLAYWRIGHT_BROWSERS_PATH"):
        return
    candidates = []
    if getattr(sys, "frozen", False):
        candidates.append(pathlib.Path(sys.executable).resolve().parent / "ms-playwright")
    if os.environ.get("LOCALAPPDATA"):
        candidates.append(pathlib.Path(os.environ["LOCALAPPDATA"]) / "ms-playwright")
    for path in candidates:
        if path.exists():
            os.environ["PLAYWRIGHT_BROWSERS_PATH"] = str(path)
            LOG.debug("Using Playwright browsers from %s", path)
            return


def main() -> None:
    settings = load_settings()
    setup_logging(settings.log_dir)
    _ensure_browser_binaries()

    LOG.info("Starting server on %s:%d (source %s)", settings.host, settings.port, settings.source_base_url)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
