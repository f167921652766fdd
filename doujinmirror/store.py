#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""SQLite persistence for ingested comics and re-hosted thumbnails.

This is the durable tier of the cache: a comic that has been ingested once
is served from here forever after, and a thumbnail is only uploaded once
per filename. Two tables are kept:

* ``comics``      keyed by ``slug``: source URL, comma-joined CDN URLs, count.
* ``thumbnails``  keyed by ``filename``: source URL and CDN URL.

All writes are upserts, so re-ingesting the same slug replaces the row
instead of duplicating it. Every call opens its own short-lived connection
and runs on a worker thread so the event loop never blocks on disk.
"""

from __future__ import annotations

import asyncio
import logging
import pathlib
import sqlite3
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from .errors import PersistenceError

LOG = logging.getLogger("doujinmirror.store")

T = TypeVar("T")

READ_RETRIES = 2
READ_RETRY_BASE_SEC = 0.5
WRITE_RETRIES = 2
WRITE_RETRY_BASE_SEC = 1.0


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS comics (
            slug TEXT PRIMARY KEY,
            url TEXT NOT NULL,
            image_url TEXT NOT NULL,
            total_images INTEGER NOT NULL,
            updated_at INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS thumbnails (
            filename TEXT PRIMARY KEY,
            source_url TEXT NOT NULL,
            cdn_url TEXT NOT NULL,
            updated_at INTEGER NOT NULL
        )
        """
    )
    conn.commit()


class ComicStore:
    def __init__(
        self,
        db_path: pathlib.Path,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.db_path = pathlib.Path(db_path)
        self._sleep = sleep or asyncio.sleep
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        if not self._schema_ready:
            _ensure_schema(conn)
            self._schema_ready = True
        return conn

    # ----- synchronous primitives -----

    def query_comic(self, slug: str) -> Optional[List[str]]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT image_url FROM comics WHERE slug = ?", (slug,)
            ).fetchone()
        finally:
            conn.close()
        if row and row[0]:
            return row[0].split(",")
        return None

    def comic_row(self, slug: str) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT slug, url, image_url, total_images FROM comics WHERE slug = ?", (slug,)
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return {"slug": row[0], "url": row[1], "image_url": row[2], "total_images": row[3]}

    def count_comics(self) -> int:
        conn = self._connect()
        try:
            return conn.execute("SELECT COUNT(*) FROM comics").fetchone()[0]
        finally:
            conn.close()

    def upsert_comic(self, slug: str, url: str, image_urls: Sequence[str]) -> None:
        joined = ",".join(image_urls)
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO comics(slug, url, image_url, total_images, updated_at)
                VALUES(?, ?, ?, ?, ?)
                ON CONFLICT(slug) DO UPDATE SET
                    image_url = excluded.image_url,
                    total_images = excluded.total_images,
                    updated_at = excluded.updated_at
                """,
                (slug, url, joined, len(image_urls), int(time.time())),
            )
            conn.commit()
        finally:
            conn.close()

    def query_thumbnail(self, filename: str, source_url: Optional[str] = None) -> Optional[str]:
        conn = self._connect()
        try:
            if source_url is None:
                row = conn.execute(
                    "SELECT cdn_url FROM thumbnails WHERE filename = ?", (filename,)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT cdn_url FROM thumbnails WHERE filename = ? AND source_url = ?",
                    (filename, source_url),
                ).fetchone()
        finally:
            conn.close()
        return row[0] if row and row[0] else None

    def upsert_thumbnail(self, filename: str, source_url: str, cdn_url: str) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO thumbnails(filename, source_url, cdn_url, updated_at)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(filename) DO UPDATE SET
                    cdn_url = excluded.cdn_url,
                    updated_at = excluded.updated_at
                """,
                (filename, source_url, cdn_url, int(time.time())),
            )
            conn.commit()
        finally:
            conn.close()

    # ----- async helpers with bounded retry -----

    async def _retrying(
        self,
        label: str,
        fn: Callable[..., T],
        *args: Any,
        retries: int,
        base_delay: float,
    ) -> T:
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(fn, *args)
            except sqlite3.Error as exc:
                if attempt >= retries:
                    raise PersistenceError(f"{label} failed after {attempt + 1} attempts: {exc}") from exc
                attempt += 1
                LOG.warning("Database error during %s (attempt %d): %s", label, attempt, exc)
                await self._sleep(base_delay * attempt)

    async def get_comic(self, slug: str) -> Optional[List[str]]:
        try:
            return await self._retrying(
                f"lookup of {slug}", self.query_comic, slug,
                retries=READ_RETRIES, base_delay=READ_RETRY_BASE_SEC,
            )
        except PersistenceError:
            LOG.exception("Database lookup failed for slug %s", slug)
            return None

    async def save_comic(self, slug: str, url: str, image_urls: Sequence[str]) -> bool:
        valid = [u for u in (image_urls or []) if u]
        if not valid:
            LOG.error("Refusing to save an empty image list for slug %s", slug)
            return False
        try:
            await self._retrying(
                f"save of {slug}", self.upsert_comic, slug, url, valid,
                retries=WRITE_RETRIES, base_delay=WRITE_RETRY_BASE_SEC,
            )
        except PersistenceError:
            LOG.exception("Failed to save slug %s to database", slug)
            return False
        LOG.info("Saved %d images to database for slug: %s", len(valid), slug)
        return True

    async def get_thumbnail(self, filename: str, source_url: Optional[str] = None) -> Optional[str]:
        try:
            return await self._retrying(
                f"lookup of {filename}", self.query_thumbnail, filename, source_url,
                retries=READ_RETRIES, base_delay=READ_RETRY_BASE_SEC,
            )
        except PersistenceError:
            LOG.exception("Thumbnail lookup failed for %s", filename)
            return None

    async def save_thumbnail(self, filename: str, source_url: str, cdn_url: str) -> bool:
        try:
            await self._retrying(
                f"save of {filename}", self.upsert_thumbnail, filename, source_url, cdn_url,
                retries=WRITE_RETRIES, base_delay=WRITE_RETRY_BASE_SEC,
            )
        except PersistenceError:
            LOG.exception("Failed to save thumbnail %s", filename)
            return False
        return True
