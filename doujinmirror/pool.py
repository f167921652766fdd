#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Fixed-capacity pool of Playwright browsers.

Sessions are handed out exclusively: a session is either idle inside the
pool or owned by exactly one operation. The whole pool is torn down and
relaunched on a fixed timer because long-lived Chromium processes leak.
Sessions that were checked out during a recycle are closed when they come
back and replaced, so the number of live browsers never exceeds capacity.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

from playwright.async_api import Browser, Page, Playwright, Route, async_playwright

LOG = logging.getLogger("doujinmirror.pool")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-infobars",
    "--js-flags=--max-old-space-size=500",
]

BLOCKED_RESOURCE_TYPES = ("image", "stylesheet", "font", "media", "other")

STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => false });
window.ga = function() {};
window.gtag = function() {};
window._gaq = { push: function() {} };
"""

POLL_INTERVAL = 0.1
REPLENISH_BACKOFF = 5.0

Launcher = Callable[[], Awaitable[Browser]]

_session_ids = itertools.count(1)


def build_headers(referer: str) -> Dict[str, str]:
    return {
        "User-Agent": USER_AGENT,
        "Referer": referer,
        "Accept-Language": "en-US,en;q=0.9",
    }


async def _block_heavy_resources(route: Route) -> None:
    try:
        if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
            await route.abort()
        else:
            await route.continue_()
    except Exception:
        # the page may already be closing
        pass


@dataclass
class PooledSession:
    browser: Browser
    generation: int
    id: int = field(default_factory=lambda: next(_session_ids))
    last_recycled: float = field(default_factory=time.time)
    alive: bool = True

    async def open_page(self, headers: Dict[str, str], intercept: bool = True) -> Page:
        """Open a page configured for one request: headers, resource blocking, webdriver spoof."""
        page = await self.browser.new_page(
            user_agent=headers.get("User-Agent", USER_AGENT),
            extra_http_headers=headers,
            viewport={"width": 1280, "height": 720},
            ignore_https_errors=True,
        )
        if intercept:
            await page.route("**/*", _block_heavy_resources)
        await page.add_init_script(STEALTH_SCRIPT)
        return page

    async def close(self) -> None:
        self.alive = False
        try:
            await self.browser.close()
        except Exception as exc:
            LOG.debug("Error closing browser %s: %s", self.id, exc)


class BrowserPool:
    def __init__(
        self,
        size: int = 3,
        *,
        headless: bool = True,
        executable_path: Optional[str] = None,
        recycle_seconds: float = 3600.0,
        poll_interval: float = POLL_INTERVAL,
        launcher: Optional[Launcher] = None,
    ):
        self.size = max(1, int(size))
        self.headless = headless
        self.executable_path = executable_path
        self.recycle_seconds = recycle_seconds
        self.poll_interval = poll_interval
        self._launcher = launcher

        self._playwright: Optional[Playwright] = None
        self._idle: List[PooledSession] = []
        self._in_use: Dict[int, PooledSession] = {}
        self._generation = 0
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._recycle_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._last_replenish = 0.0
        self._closed = False

    # ----- stats -----

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def in_use_count(self) -> int:
        return len(self._in_use)

    @property
    def live_count(self) -> int:
        return len(self._idle) + len(self._in_use)

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ----- lifecycle -----

    async def _launch(self) -> Browser:
        if self._launcher is not None:
            return await self._launcher()
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        kwargs = {"headless": self.headless, "args": LAUNCH_ARGS, "timeout": 15_000}
        if self.executable_path:
            kwargs["executable_path"] = self.executable_path
        return await self._playwright.chromium.launch(**kwargs)

    async def _fill(self) -> int:
        launched = 0
        missing = self.size - self.live_count
        for _ in range(max(0, missing)):
            try:
                browser = await self._launch()
            except Exception:
                LOG.exception("Failed to launch browser")
                continue
            self._idle.append(PooledSession(browser=browser, generation=self._generation))
            launched += 1
        return launched

    async def initialize(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            await self._fill()
            self._initialized = True
            if self.live_count < self.size:
                LOG.warning(
                    "Browser pool initialized with %d/%d instances", self.live_count, self.size
                )
            else:
                LOG.info("Browser pool initialized (%d instances)", self.live_count)

    def start_recycler(self) -> None:
        if self._recycle_task is None or self._recycle_task.done():
            self._recycle_task = asyncio.create_task(self._recycle_loop())

    async def _recycle_loop(self) -> None:
        while True:
            await asyncio.sleep(self.recycle_seconds)
            try:
                await self.recycle()
            except Exception:
                LOG.exception("Browser pool recycle failed")

    async def recycle(self) -> None:
        LOG.info("Refreshing browser pool...")
        async with self._init_lock:
            self._generation += 1
            idle, self._idle = self._idle, []
            self._initialized = False
            await asyncio.gather(*(s.close() for s in idle), return_exceptions=True)
        await self.initialize()

    async def resize(self, size: int) -> None:
        self.size = max(1, int(size))
        async with self._init_lock:
            while self._idle and self.live_count > self.size:
                await self._idle.pop().close()
        if self.live_count < self.size:
            await self._replenish()

    async def _replenish(self) -> None:
        self._last_replenish = time.monotonic()
        async with self._init_lock:
            launched = await self._fill()
        if launched:
            LOG.info("Replenished browser pool with %d instance(s)", launched)

    def _schedule_replenish(self) -> None:
        if self._closed or any(not t.done() for t in self._background):
            return
        task = asyncio.create_task(self._replenish())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ----- checkout -----

    async def acquire(self) -> PooledSession:
        if not self._initialized:
            await self.initialize()
        while not self._idle:
            if (
                self.live_count < self.size
                and time.monotonic() - self._last_replenish > REPLENISH_BACKOFF
            ):
                self._last_replenish = time.monotonic()
                self._schedule_replenish()
            await asyncio.sleep(self.poll_interval)
        session = self._idle.pop()
        self._in_use[session.id] = session
        return session

    async def release(self, session: PooledSession) -> None:
        self._in_use.pop(session.id, None)
        stale = session.generation != self._generation
        if session.alive and not stale and not self._closed and self.live_count < self.size:
            self._idle.append(session)
            return
        await session.close()
        if stale and not self._closed and self.live_count < self.size:
            self._schedule_replenish()

    @contextlib.asynccontextmanager
    async def session(self) -> AsyncIterator[PooledSession]:
        pooled = await self.acquire()
        try:
            yield pooled
        finally:
            await self.release(pooled)

    async def close(self) -> None:
        LOG.info("Shutting down browser pool...")
        self._closed = True
        if self._recycle_task is not None:
            self._recycle_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._recycle_task
        for task in list(self._background):
            task.cancel()
        sessions = self._idle + list(self._in_use.values())
        self._idle = []
        self._in_use = {}
        await asyncio.gather(*(s.close() for s in sessions), return_exceptions=True)
        if self._playwright is not None:
            with contextlib.suppress(Exception):
                await self._playwright.stop()
            self._playwright = None
        self._initialized = False
