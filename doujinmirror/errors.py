#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Optional

import aiohttp
from playwright.async_api import TimeoutError as PlaywrightTimeoutError


class ScrapeError(Exception):
    code = "SCRAPE_ERROR"


class TransientError(ScrapeError):
    """Network hiccup, timeout or abort; worth retrying."""

    code = "TRANSIENT"


class StructuralError(ScrapeError):
    """The expected content marker never appeared on the page."""

    code = "STRUCTURAL"


class NotFoundError(ScrapeError):
    code = "NOT_FOUND"


class PersistenceError(ScrapeError):
    code = "PERSISTENCE"


class InvalidRequest(ScrapeError):
    code = "INVALID_REQUEST"


class OperationAborted(TransientError):
    code = "ABORTED"


class BatchInProgress(ScrapeError):
    code = "BATCH_IN_PROGRESS"

    def __init__(self, kind: str, meta: Dict[str, Any], started_at: float):
        self.kind = kind
        self.meta = dict(meta)
        self.started_at = started_at
        super().__init__(f"Another {kind} operation is in progress, please try again later")

    @property
    def elapsed_seconds(self) -> int:
        return int(time.time() - self.started_at)

    def describe(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {"kind": self.kind}
        info.update(self.meta)
        info["startedAt"] = int(self.started_at * 1000)
        info["elapsedSeconds"] = self.elapsed_seconds
        return info


_TRANSIENT_HINTS = ("network", "timeout", "timed out", "aborted", "connection")


def is_transient(exc: Optional[BaseException]) -> bool:
    if exc is None:
        return False
    if isinstance(exc, (TransientError, asyncio.TimeoutError, aiohttp.ClientError, ConnectionError)):
        return True
    if isinstance(exc, PlaywrightTimeoutError):
        return True
    if isinstance(exc, (StructuralError, NotFoundError, InvalidRequest)):
        return False
    message = str(exc).lower()
    return any(hint in message for hint in _TRANSIENT_HINTS)


def error_code(exc: BaseException) -> str:
    return getattr(exc, "code", None) or type(exc).__name__
