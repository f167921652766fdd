#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Long-running batch jobs: query auto-fetch, manifest auto-fetch and
thumbnail harvesting.

All three share one :class:`OperationLock`, so at most one batch runs per
process. Work is split into chunks that run one after another; items in a
chunk run concurrently. Each run owns a :class:`Deadline` which is checked
before every chunk.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import pathlib
import time
from dataclasses import dataclass
from tempfile import NamedTemporaryFile
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar, Union

from . import parsing
from .errors import BatchInProgress, InvalidRequest, NotFoundError, OperationAborted, is_transient
from .notify import AdminNotifier
from .service import DoujinService
from .timeouts import Deadline, with_timeout

LOG = logging.getLogger("doujinmirror.batch")

T = TypeVar("T")

CONCURRENCY = 3
CHAPTER_BATCH_SIZE = 5
QUERY_TIMEOUT_SEC = 300
MANIFEST_TIMEOUT_SEC = 7 * 24 * 60 * 60
THUMBNAIL_TIMEOUT_SEC = 300
THUMBNAIL_MAX_PAGES = 10
CHAPTER_TIMEOUT_SEC = 180
CHAPTER_RETRY_TIMEOUT_SEC = 240
RETRY_DELAY_SEC = 5
STALL_PAUSE_SEC = 5
MANIFEST_MAX_STALLED_PASSES = 3
DEFAULT_MANIFEST = "slug.json"

OK_STATUSES = ("ok", "ok (retry)")

BatchResponse = Tuple[int, Dict[str, Any]]


def chunked(items: Sequence[T], size: int) -> List[List[T]]:
    if size < 1:
        raise ValueError("chunk size must be positive")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def unique_preserve(items: Sequence[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return out


# ---------- single-flight ----------

class OperationLock:
    """One permit for the whole process, with a description of its holder."""

    def __init__(self):
        self._kind: Optional[str] = None
        self._meta: Dict[str, Any] = {}
        self._started_at: Optional[float] = None

    @property
    def busy(self) -> bool:
        return self._kind is not None

    def acquire(self, kind: str, **meta: Any) -> None:
        # check-and-set with no await in between
        if self._kind is not None:
            raise BatchInProgress(self._kind, self._meta, self._started_at)
        self._kind = kind
        self._meta = meta
        self._started_at = time.time()

    def release(self) -> None:
        self._kind = None
        self._meta = {}
        self._started_at = None

    @contextlib.contextmanager
    def hold(self, kind: str, **meta: Any) -> Iterator[None]:
        self.acquire(kind, **meta)
        try:
            yield
        finally:
            self.release()

    def status(self) -> Optional[Dict[str, Any]]:
        if self._kind is None:
            return None
        return BatchInProgress(self._kind, self._meta, self._started_at).describe()


# ---------- search payload shapes ----------

@dataclass(frozen=True)
class SingleThumbnail:
    thumbnail: str


@dataclass(frozen=True)
class ResultsEnvelope:
    results: List[Dict[str, Any]]


@dataclass(frozen=True)
class BareList:
    items: List[Any]


@dataclass(frozen=True)
class UnknownPayload:
    raw: Any = None


SearchPayload = Union[SingleThumbnail, ResultsEnvelope, BareList, UnknownPayload]


def classify_payload(data: Any) -> SearchPayload:
    if isinstance(data, list):
        return BareList(data)
    if isinstance(data, dict):
        if isinstance(data.get("thumbnail"), str) and data["thumbnail"]:
            return SingleThumbnail(data["thumbnail"])
        if isinstance(data.get("results"), list):
            return ResultsEnvelope(data["results"])
    return UnknownPayload(data)


def _thumbnail_of(item: Any) -> Optional[str]:
    if isinstance(item, dict):
        value = item.get("thumbnail")
        return value if isinstance(value, str) and value else None
    return None


def extract_thumbnails(payload: SearchPayload) -> List[str]:
    if isinstance(payload, SingleThumbnail):
        return [payload.thumbnail]
    if isinstance(payload, ResultsEnvelope):
        items = payload.results
    elif isinstance(payload, BareList):
        items = payload.items
    else:
        return []
    return [t for t in (_thumbnail_of(item) for item in items) if t]


# ---------- manifest ----------

class Manifest:
    """On-disk list of chapters still to fetch; rewritten after every wave."""

    def __init__(self, path: pathlib.Path, data: Dict[str, Any]):
        self.path = path
        self.data = data

    @classmethod
    def load(cls, path: pathlib.Path) -> "Manifest":
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise InvalidRequest(f"Manifest file not found: {path.name}")
        except OSError as exc:
            raise InvalidRequest(f"Could not read manifest: {exc}")
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise InvalidRequest(f"Manifest is not valid JSON: {exc}")
        if not isinstance(data, dict) or not data.get("success") or not isinstance(data.get("chapters"), list):
            raise InvalidRequest("Invalid JSON format or no chapters found")
        return cls(path, data)

    @property
    def chapters(self) -> List[Dict[str, Any]]:
        return self.data["chapters"]

    @property
    def page(self) -> Any:
        return self.data.get("page", 1)

    def remove_indices(self, indices: Sequence[int]) -> None:
        for index in sorted(set(indices), reverse=True):
            del self.chapters[index]

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with NamedTemporaryFile("w", encoding="utf-8", dir=self.path.parent, delete=False) as tmp:
            tmp.write(json.dumps(self.data, indent=2, ensure_ascii=False))
            tmp.flush()
            os.fsync(tmp.fileno())
            tmp_path = pathlib.Path(tmp.name)
        os.replace(tmp_path, self.path)


def resolve_manifest_path(root: pathlib.Path, name: Optional[str]) -> pathlib.Path:
    root = pathlib.Path(root).resolve()
    target = (root / (name or DEFAULT_MANIFEST)).resolve()
    if root not in target.parents:
        raise InvalidRequest("Manifest path must stay inside the manifest directory")
    return target


# ---------- orchestrators ----------

class BatchRunner:
    def __init__(
        self,
        service: DoujinService,
        lock: OperationLock,
        *,
        manifest_dir: pathlib.Path,
        notifier: Optional[AdminNotifier] = None,
        concurrency: int = CONCURRENCY,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.service = service
        self.lock = lock
        self.manifest_dir = pathlib.Path(manifest_dir)
        self.notifier = notifier or AdminNotifier()
        self.concurrency = concurrency
        self._sleep = sleep or asyncio.sleep

    # ----- query auto-fetch -----

    async def auto_fetch(self, query: Optional[str], page: int = 1, timeout: float = QUERY_TIMEOUT_SEC) -> BatchResponse:
        if not query:
            raise InvalidRequest("Query required")

        with self.lock.hold("auto-fetch", query=query, page=page):
            LOG.info("Auto-fetch started for %r page %d", query, page)
            async with Deadline(timeout, f"auto-fetch {query!r} page {page}") as deadline:
                try:
                    status, body = await self._auto_fetch(query, page, deadline)
                except OperationAborted:
                    status, body = 500, {"success": False, "error": "Operation timed out"}
                except Exception as exc:
                    LOG.exception("Auto-fetch for %r failed", query)
                    status, body = 500, {"success": False, "error": str(exc) or "Unknown error"}

        await self.notifier.send(
            f"auto-fetch {query!r} page {page}: HTTP {status}, {body.get('totalFetched', 0)} comics"
        )
        return status, body

    async def _auto_fetch(self, query: str, page: int, deadline: Deadline) -> BatchResponse:
        search = await deadline.run(self.service.search(query, page))
        found = search.get("results") or []
        if not found:
            return 200, {"success": True, "totalFetched": 0, "results": []}

        unique: Dict[Any, Dict[str, Any]] = {}
        for item in found:
            unique[item.get("link")] = item

        details = await asyncio.gather(*(self._fetch_detail(item, deadline) for item in unique.values()))

        results: List[Dict[str, Any]] = []
        chunks = chunked(details, self.concurrency)
        LOG.info("Processing %d comics in %d batches", len(details), len(chunks))
        try:
            for number, chunk in enumerate(chunks, 1):
                deadline.raise_if_aborted()
                LOG.info("Comic batch %d/%d (%d comics)", number, len(chunks), len(chunk))
                results.extend(await asyncio.gather(*(self._process_comic(d, deadline) for d in chunk)))
            # items swallow their own aborts, so the last chunk can end past the deadline
            deadline.raise_if_aborted()
        except OperationAborted:
            done = len(results)
            partial = results + [_partial_entry(d) for d in details[done:]]
            return 202, {
                "success": False,
                "page": page,
                "error": "Operation timed out",
                "message": "The operation timed out, returning partial results",
                "partialResults": partial,
            }

        return 200, {"success": True, "page": page, "totalFetched": len(results), "results": results}

    async def _fetch_detail(self, item: Dict[str, Any], deadline: Deadline) -> Dict[str, Any]:
        base = {"originalTitle": item.get("title"), "originalLink": item.get("link")}
        try:
            data = await deadline.run(self.service.detail(parsing.slug_from_link(item.get("link"))))
        except Exception as exc:
            return dict(base, success=False, error=str(exc))
        return dict(base, success=bool(data.get("success")), detail=data.get("detail") or {})

    async def _process_comic(self, result: Dict[str, Any], deadline: Deadline) -> Dict[str, Any]:
        if not result["success"]:
            return {
                "title": result["originalTitle"],
                "link": result["originalLink"],
                "status": "detail_failed",
                "reason": result.get("error") or "Unknown error",
            }

        detail = result["detail"]
        title = detail.get("title") or result["originalTitle"]
        chapters = detail.get("chapters") or []
        chapter_results: List[Dict[str, Any]] = []
        try:
            for batch in chunked(chapters, CHAPTER_BATCH_SIZE):
                deadline.raise_if_aborted()
                chapter_results.extend(
                    await asyncio.gather(*(self._fetch_chapter(chap, deadline) for chap in batch))
                )
        except OperationAborted as exc:
            return {
                "title": result["originalTitle"],
                "link": result["originalLink"],
                "status": "aborted",
                "reason": str(exc),
            }

        return {
            "title": title,
            "link": detail.get("url") or result["originalLink"],
            "chaptersFetched": len(chapter_results),
            "totalChapters": len(chapters),
            "chapters": chapter_results,
        }

    async def _fetch_chapter(self, chap: Dict[str, Any], deadline: Deadline) -> Dict[str, Any]:
        name = chap.get("chapterTitle")
        slug = parsing.clean_slug(chap.get("chapterLink"))
        try:
            data = await deadline.run(self.service.get_comic(slug))
        except OperationAborted as exc:
            return {"chapter": name, "status": "aborted", "reason": str(exc)}
        except (NotFoundError, InvalidRequest) as exc:
            return {"chapter": name, "status": "failed", "reason": str(exc)}
        except Exception as exc:
            LOG.error("Error while fetching chapter %s: %s", name, exc)
            return {"chapter": name, "status": "fetch_error", "reason": str(exc)}
        if data.get("success"):
            return {"chapter": name, "status": "ok", "reason": data.get("warning")}
        return {"chapter": name, "status": "failed", "reason": data.get("error")}

    # ----- manifest auto-fetch -----

    async def auto_json(self, file: Optional[str] = None, timeout: float = MANIFEST_TIMEOUT_SEC) -> BatchResponse:
        path = resolve_manifest_path(self.manifest_dir, file)

        with self.lock.hold("auto-json", file=path.name):
            manifest = Manifest.load(path)
            LOG.info("Manifest %s: %d chapters to process", path.name, len(manifest.chapters))
            outcomes: Dict[str, Dict[str, Any]] = {}
            extensions = 0
            try:
                extensions = await self._run_manifest(manifest, timeout, outcomes)
            except Exception as exc:
                LOG.exception("Manifest run for %s failed", path.name)
                status, body = 500, {
                    "success": False,
                    "error": str(exc) or "Unknown error",
                    "totalRemaining": len(manifest.chapters),
                    "results": list(outcomes.values()),
                }
            else:
                results = list(outcomes.values())
                processed = sum(1 for r in results if r["status"] in OK_STATUSES)
                status, body = 200, {
                    "success": True,
                    "page": manifest.page,
                    "totalProcessed": processed,
                    "totalFailed": len(results) - processed,
                    "totalRemaining": len(manifest.chapters),
                    "results": results,
                    "deadlineExtensions": extensions,
                }

        await self.notifier.send(
            f"auto-json {path.name}: HTTP {status}, {body.get('totalProcessed', 0)} processed, "
            f"{body.get('totalRemaining', 0)} remaining"
        )
        return status, body

    async def _run_manifest(self, manifest: Manifest, timeout: float, outcomes: Dict[str, Dict[str, Any]]) -> int:
        """Process waves until the manifest is empty or stops shrinking; returns the extension count."""
        label = f"auto-json {manifest.path.name}"
        deadline = Deadline(timeout, label).start()
        extensions = 0
        stalled = 0
        try:
            while manifest.chapters:
                removed = 0
                index = 0
                while index < len(manifest.chapters):
                    if deadline.aborted:
                        # soft deadline: chapters remain, so keep going under a fresh one
                        extensions += 1
                        LOG.info("%s: deadline reached with %d chapters left, extending", label, len(manifest.chapters))
                        deadline.clear()
                        deadline = Deadline(timeout, label).start()

                    wave = manifest.chapters[index:index + self.concurrency]
                    results = await asyncio.gather(*(self._process_manifest_chapter(ch) for ch in wave))
                    done = []
                    for offset, result in enumerate(results):
                        outcomes[_outcome_key(result)] = result
                        if result["status"] in OK_STATUSES:
                            done.append(index + offset)

                    if done:
                        manifest.remove_indices(done)
                        try:
                            manifest.save()
                        except OSError as exc:
                            LOG.error("Could not rewrite manifest %s: %s", manifest.path, exc)
                        removed += len(done)
                    index += len(wave) - len(done)
                    LOG.info("%s: wave done, %d ok, %d chapters left", label, len(done), len(manifest.chapters))

                if not manifest.chapters:
                    break
                if removed:
                    stalled = 0
                    continue
                stalled += 1
                if stalled >= MANIFEST_MAX_STALLED_PASSES:
                    LOG.warning("%s: no progress after %d passes, leaving %d chapters", label, stalled, len(manifest.chapters))
                    break
                LOG.info("%s: pass made no progress, pausing %ss", label, STALL_PAUSE_SEC)
                await self._sleep(STALL_PAUSE_SEC)
        finally:
            deadline.clear()
        return extensions

    async def _process_manifest_chapter(self, chapter: Dict[str, Any]) -> Dict[str, Any]:
        title = chapter.get("title") or "Unknown"
        slug = parsing.clean_slug(chapter.get("slug"))
        if not slug:
            return {"title": title, "slug": "Unknown", "status": "failed", "reason": "Invalid or missing slug"}

        try:
            data = await with_timeout(self.service.get_comic(slug), CHAPTER_TIMEOUT_SEC, f"chapter {slug}")
            return _chapter_outcome(title, slug, data, "ok")
        except NotFoundError as exc:
            return {"title": title, "slug": slug, "status": "failed", "reason": str(exc)}
        except Exception as exc:
            if not is_transient(exc):
                LOG.error("Chapter %s failed: %s", slug, exc)
                return {"title": title, "slug": slug, "status": "processing_error", "reason": str(exc)}
            LOG.info("Chapter %s hit a transient error (%s), retrying in %ss", slug, exc, RETRY_DELAY_SEC)

        await self._sleep(RETRY_DELAY_SEC)
        try:
            data = await with_timeout(self.service.get_comic(slug), CHAPTER_RETRY_TIMEOUT_SEC, f"chapter {slug} retry")
        except Exception as exc:
            LOG.error("Retry for chapter %s failed: %s", slug, exc)
            return {"title": title, "slug": slug, "status": "retry_failed", "reason": str(exc)}
        return _chapter_outcome(title, slug, data, "ok (retry)")

    # ----- thumbnail harvesting -----

    async def auto_thumbnail(
        self,
        query: Optional[str],
        page: int = 1,
        max_pages: int = 1,
        timeout: float = THUMBNAIL_TIMEOUT_SEC,
    ) -> BatchResponse:
        if not query:
            raise InvalidRequest("Query is required")
        start = page
        end = max(start, min(start + max_pages - 1, start + THUMBNAIL_MAX_PAGES - 1))

        thumbnails: List[Dict[str, Any]] = []

        def body(success: bool, processed: int) -> Dict[str, Any]:
            ok = sum(1 for t in thumbnails if t["status"] == "success")
            return {
                "success": success,
                "query": query,
                "startPage": start,
                "endPage": end,
                "processedPages": processed,
                "totalPages": end - start + 1,
                "stats": {"total": len(thumbnails), "success": ok, "failed": len(thumbnails) - ok},
                "thumbnails": thumbnails,
            }

        with self.lock.hold("auto-thumbnail", query=query, startPage=start, endPage=end):
            async with Deadline(timeout, f"auto-thumbnail {query!r}") as deadline:
                processed = 0
                try:
                    for current in range(start, end + 1):
                        deadline.raise_if_aborted()
                        await self._harvest_page(query, current, deadline, thumbnails)
                        # rehosts swallow their own aborts, so check again before counting the page
                        deadline.raise_if_aborted()
                        processed += 1
                    status, result = 200, body(True, processed)
                except OperationAborted:
                    result = body(False, processed)
                    result["error"] = "Operation timed out"
                    result["message"] = "The operation timed out but partial results are available"
                    status = 202

        stats = result["stats"]
        await self.notifier.send(
            f"auto-thumbnail {query!r} pages {start}-{end}: HTTP {status}, "
            f"{stats['success']}/{stats['total']} rehosted"
        )
        return status, result

    async def _harvest_page(self, query: str, page: int, deadline: Deadline, out: List[Dict[str, Any]]) -> None:
        try:
            data = await deadline.run(self.service.search(query, page))
        except OperationAborted:
            raise
        except Exception as exc:
            LOG.error("Search for %r page %d failed: %s", query, page, exc)
            return

        urls = unique_preserve(extract_thumbnails(classify_payload(data)))
        if not urls:
            LOG.info("No thumbnails on page %d for %r", page, query)
            return
        LOG.info("Page %d: %d unique thumbnails", page, len(urls))
        for chunk in chunked(urls, self.concurrency):
            deadline.raise_if_aborted()
            out.extend(await asyncio.gather(*(self._rehost_one(url, page, deadline) for url in chunk)))

    async def _rehost_one(self, url: str, page: int, deadline: Deadline) -> Dict[str, Any]:
        entry = {"page": page, "originalThumbnail": url}
        try:
            cdn_url = await deadline.run(self.service.rehost(url))
        except OperationAborted as exc:
            return dict(entry, status="aborted", error=str(exc))
        except Exception as exc:
            LOG.warning("Rehost of %s failed: %s", url, exc)
            return dict(entry, status="error", error=str(exc))
        if not cdn_url:
            return dict(entry, status="failed", error="No CDN URL returned")
        return dict(entry, cdnUrl=cdn_url, status="success")


def _partial_entry(result: Dict[str, Any]) -> Dict[str, Any]:
    if not result["success"]:
        return {
            "title": result["originalTitle"],
            "link": result["originalLink"],
            "status": "detail_failed",
            "reason": result.get("error") or "Unknown error",
        }
    detail = result["detail"]
    return {
        "title": detail.get("title") or result["originalTitle"],
        "link": detail.get("url") or result["originalLink"],
        "status": "partial",
        "reason": "Operation timed out before this comic was processed",
    }


def _chapter_outcome(title: str, slug: str, data: Dict[str, Any], ok_status: str) -> Dict[str, Any]:
    images = data.get("images") or []
    if data.get("success") and images:
        return {"title": title, "slug": slug, "status": ok_status, "imagesCount": len(images)}
    return {
        "title": title,
        "slug": slug,
        "status": "failed",
        "reason": data.get("warning") or data.get("error") or "No images could be uploaded",
    }


def _outcome_key(result: Dict[str, Any]) -> str:
    if result["slug"] == "Unknown":
        return f"invalid:{result['title']}"
    return result["slug"]
