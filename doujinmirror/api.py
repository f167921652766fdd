#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""HTTP surface of the mirror service."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aiohttp
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from starlette.background import BackgroundTask

from . import __version__
from .batch import MANIFEST_TIMEOUT_SEC, QUERY_TIMEOUT_SEC, THUMBNAIL_TIMEOUT_SEC, BatchRunner, OperationLock
from .cache import TTLCache
from .cdn import build_storage
from .config import Settings, load_settings
from .errors import BatchInProgress, InvalidRequest, NotFoundError, OperationAborted, ScrapeError, error_code
from .logsetup import install_exception_hooks
from .notify import AdminNotifier
from .pool import BrowserPool
from .ratelimit import RateLimiter
from .scraper import Scraper
from .service import DoujinService, parse_int
from .store import ComicStore

LOG = logging.getLogger("doujinmirror.api")

FRESH_CACHE_CONTROL = "public, max-age=600"
IMAGE_CACHE_CONTROL = "public, max-age=86400"
UNLIMITED_PATHS = ("/health",)


@dataclass
class Runtime:
    """Everything the request handlers share, owned by one app instance."""

    settings: Settings
    service: DoujinService
    batch: BatchRunner
    lock: OperationLock
    limiter: RateLimiter
    pool: Optional[BrowserPool] = None
    http: Optional[aiohttp.ClientSession] = None
    started_at: float = field(default_factory=time.monotonic)

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
        if self.http is not None and not self.http.closed:
            await self.http.close()


def build_runtime(settings: Settings) -> Runtime:
    """Wire up the real pool, store, storage and HTTP session."""
    pool = BrowserPool(
        settings.pool_size,
        headless=settings.headless,
        executable_path=settings.browser_executable,
        recycle_seconds=settings.pool_recycle_seconds,
    )
    http = aiohttp.ClientSession()
    scraper = Scraper(
        pool,
        settings.source_base_url,
        nav_timeout=settings.nav_timeout,
        rehost_timeout=settings.rehost_timeout,
    )
    service = DoujinService(
        scraper,
        ComicStore(settings.db_path),
        build_storage(settings),
        TTLCache(settings.cache_ttl),
        http,
        base_url=settings.source_base_url,
        image_fetch_timeout=settings.image_fetch_timeout,
        proxy_timeout=settings.proxy_timeout,
        proxy_promote_after=settings.proxy_promote_after,
    )
    lock = OperationLock()
    batch = BatchRunner(
        service,
        lock,
        manifest_dir=settings.manifest_dir,
        notifier=AdminNotifier(settings.telegram_bot_token, settings.admin_chat_id),
    )
    return Runtime(
        settings=settings,
        service=service,
        batch=batch,
        lock=lock,
        limiter=RateLimiter(settings.rate_limit, settings.rate_window),
        pool=pool,
        http=http,
    )


def _json(body: Dict[str, Any], status_code: int = 200, fresh: bool = False) -> JSONResponse:
    headers = {"Cache-Control": FRESH_CACHE_CONTROL} if fresh else None
    return JSONResponse(body, status_code=status_code, headers=headers)


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    settings = settings or (runtime.settings if runtime is not None else load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = runtime or build_runtime(settings)
        app.state.runtime = rt
        install_exception_hooks(asyncio.get_running_loop())
        if rt.pool is not None:
            await rt.pool.initialize()
            rt.pool.start_recycler()
        LOG.info("Server ready, browser pool: %d", rt.pool.live_count if rt.pool else 0)
        try:
            yield
        finally:
            LOG.info("Shutting down")
            await rt.close()

    app = FastAPI(title="doujinmirror", version=__version__, lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    if not settings.r2_configured:
        settings.local_cdn_dir.mkdir(parents=True, exist_ok=True)
        app.mount("/cdn", StaticFiles(directory=str(settings.local_cdn_dir)), name="cdn")

    def rt(request: Request) -> Runtime:
        return request.app.state.runtime

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        if request.url.path not in UNLIMITED_PATHS:
            client = request.client.host if request.client else "unknown"
            if not rt(request).limiter.hit(client):
                return JSONResponse({"error": "Too many requests"}, status_code=429)
        return await call_next(request)

    # ----- error mapping -----

    @app.exception_handler(InvalidRequest)
    async def _invalid(request: Request, exc: InvalidRequest):
        return JSONResponse({"error": str(exc)}, status_code=400)

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse({"error": str(exc) or "Comic not found"}, status_code=404)

    @app.exception_handler(BatchInProgress)
    async def _busy(request: Request, exc: BatchInProgress):
        return JSONResponse(
            {"success": False, "error": str(exc), "currentOperation": exc.describe()},
            status_code=429,
        )

    @app.exception_handler(OperationAborted)
    async def _aborted(request: Request, exc: OperationAborted):
        return JSONResponse({"error": "Request timed out", "details": str(exc)}, status_code=504)

    @app.exception_handler(ScrapeError)
    async def _scrape_error(request: Request, exc: ScrapeError):
        LOG.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse({"success": False, "error": str(exc), "code": error_code(exc)}, status_code=500)

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        LOG.exception("Unhandled error on %s", request.url.path)
        return JSONResponse({"status": "error", "message": str(exc) or "Internal error"}, status_code=500)

    # ----- scrape endpoints -----

    @app.get("/doujin")
    async def doujin(request: Request, page: Optional[str] = None):
        body = await rt(request).service.listing(page)
        return _json(body, fresh=body["source"] == "fresh")

    @app.get("/search")
    async def search(request: Request, q: Optional[str] = None, page: Optional[str] = None):
        body = await rt(request).service.search(q, page)
        return _json(body, fresh=not body["cached"])

    @app.get("/detail")
    async def detail(request: Request, url: Optional[str] = None):
        body = await rt(request).service.detail(url)
        return _json(body, fresh=not body["cached"])

    @app.get("/get-comic")
    async def get_comic(request: Request, url: Optional[str] = None):
        body = await rt(request).service.get_comic(url)
        return _json(body, fresh=not body["cached"])

    @app.get("/get")
    async def get_image(request: Request, url: Optional[str] = None):
        cdn_url = await rt(request).service.rehost(url)
        return {"cdnUrl": cdn_url}

    @app.get("/proxy")
    async def proxy(request: Request, url: Optional[str] = None):
        result = await rt(request).service.proxy(url)
        if result.redirect_url:
            return RedirectResponse(result.redirect_url, status_code=302)
        return StreamingResponse(
            result.body,
            media_type=result.content_type,
            headers={"Cache-Control": IMAGE_CACHE_CONTROL},
            # an unstarted body never reaches its own cleanup on early disconnect
            background=BackgroundTask(result.release) if result.release else None,
        )

    # ----- batch endpoints -----

    @app.get("/auto-fetch")
    async def auto_fetch(
        request: Request,
        q: Optional[str] = None,
        pages: Optional[str] = None,
        timeout: Optional[str] = None,
    ):
        status, body = await rt(request).batch.auto_fetch(
            q, parse_int(pages, 1), parse_int(timeout, QUERY_TIMEOUT_SEC)
        )
        return _json(body, status_code=status)

    @app.get("/auto-json")
    async def auto_json(request: Request, file: Optional[str] = None, timeout: Optional[str] = None):
        status, body = await rt(request).batch.auto_json(file, parse_int(timeout, MANIFEST_TIMEOUT_SEC))
        return _json(body, status_code=status)

    @app.get("/auto-thumbnail")
    async def auto_thumbnail(
        request: Request,
        q: Optional[str] = None,
        page: Optional[str] = None,
        max_pages: Optional[str] = Query(None, alias="maxPages"),
        timeout: Optional[str] = None,
    ):
        status, body = await rt(request).batch.auto_thumbnail(
            q, parse_int(page, 1), parse_int(max_pages, 1), parse_int(timeout, THUMBNAIL_TIMEOUT_SEC)
        )
        return _json(body, status_code=status)

    # ----- health -----

    @app.get("/health")
    async def health(request: Request):
        runtime_ = rt(request)
        pool = runtime_.pool
        return {
            "status": "ok",
            "uptime": round(time.monotonic() - runtime_.started_at, 3),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "browserPool": pool.idle_count if pool else 0,
            "poolCapacity": pool.size if pool else 0,
            "inUse": pool.in_use_count if pool else 0,
            "batch": runtime_.lock.status(),
        }

    return app
