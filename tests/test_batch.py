# -*- coding: utf-8 -*-
import asyncio
import json
from unittest import mock

import pytest
from conftest import no_sleep

from doujinmirror.batch import (
    BareList,
    BatchRunner,
    Manifest,
    OperationLock,
    ResultsEnvelope,
    SingleThumbnail,
    UnknownPayload,
    chunked,
    classify_payload,
    extract_thumbnails,
    resolve_manifest_path,
)
from doujinmirror.errors import BatchInProgress, InvalidRequest, NotFoundError, TransientError


class FakeBatchService:
    def __init__(self):
        self.search_results = {}
        self.details = {}
        self.failing = set()
        self.flaky = set()
        self.delay = 0.0
        self.rehost_delay = 0.0
        self.gate = None
        self.comic_calls = []
        self.rehosted = []

    async def search(self, query, page):
        return {"success": True, "page": page, "results": self.search_results.get(page, []), "cached": False}

    async def detail(self, slug):
        if slug not in self.details:
            raise RuntimeError(f"detail failed for {slug}")
        return {"success": True, "detail": self.details[slug], "cached": False}

    async def get_comic(self, slug):
        self.comic_calls.append(slug)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if slug in self.failing:
            raise NotFoundError("Comic not found")
        if slug in self.flaky:
            self.flaky.discard(slug)
            raise TransientError("connection reset")
        return {"success": True, "images": [f"https://cdn.test/{slug}_1.jpg"], "cached": False}

    async def rehost(self, url):
        self.rehosted.append(url)
        if self.rehost_delay and "slow" in url:
            await asyncio.sleep(self.rehost_delay)
        return "https://cdn.test/IMAGES/" + url.rsplit("/", 1)[-1]


def _write_manifest(path, slugs):
    data = {
        "success": True,
        "page": 1,
        "chapters": [{"title": s.upper(), "slug": f"/{s}/", "extra": s} for s in slugs],
    }
    path.write_text(json.dumps(data), encoding="utf-8")


def _runner(service, tmp_path, sleep=no_sleep):
    return BatchRunner(service, OperationLock(), manifest_dir=tmp_path, sleep=sleep)


# ----- helpers -----

def test_chunked_preserves_order():
    assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
    assert chunked([], 3) == []


def test_payload_shapes_are_normalised():
    single = classify_payload({"thumbnail": "https://i/1.jpg"})
    envelope = classify_payload({"results": [{"thumbnail": "https://i/2.jpg"}, {"title": "x"}]})
    bare = classify_payload([{"thumbnail": "https://i/3.jpg"}, "junk"])
    unknown = classify_payload("nonsense")

    assert isinstance(single, SingleThumbnail)
    assert isinstance(envelope, ResultsEnvelope)
    assert isinstance(bare, BareList)
    assert isinstance(unknown, UnknownPayload)
    assert extract_thumbnails(single) == ["https://i/1.jpg"]
    assert extract_thumbnails(envelope) == ["https://i/2.jpg"]
    assert extract_thumbnails(bare) == ["https://i/3.jpg"]
    assert extract_thumbnails(unknown) == []


def test_manifest_path_must_stay_inside_root(tmp_path):
    assert resolve_manifest_path(tmp_path, None) == (tmp_path / "slug.json").resolve()
    with pytest.raises(InvalidRequest):
        resolve_manifest_path(tmp_path, "../outside.json")


def test_lock_rejects_second_holder():
    lock = OperationLock()
    with lock.hold("auto-fetch", query="a"):
        with pytest.raises(BatchInProgress) as info:
            lock.acquire("auto-json", file="slug.json")
        described = info.value.describe()
        assert described["kind"] == "auto-fetch"
        assert described["query"] == "a"
        assert described["elapsedSeconds"] >= 0
    assert not lock.busy
    assert lock.status() is None


# ----- manifest auto-fetch -----

def test_manifest_is_rewritten_after_each_wave(tmp_path):
    path = tmp_path / "slug.json"
    _write_manifest(path, ["a", "b", "c", "d", "e"])
    service = FakeBatchService()
    service.failing = {"b", "d"}
    snapshots = []
    original_save = Manifest.save

    def recording_save(self):
        original_save(self)
        saved = json.loads(self.path.read_text(encoding="utf-8"))
        snapshots.append([c["extra"] for c in saved["chapters"]])

    with mock.patch.object(Manifest, "save", recording_save):
        status, body = asyncio.run(_runner(service, tmp_path).auto_json())

    assert status == 200
    assert snapshots == [["b", "d", "e"], ["b", "d"]]
    remaining = json.loads(path.read_text(encoding="utf-8"))
    assert [c["slug"] for c in remaining["chapters"]] == ["/b/", "/d/"]
    assert body["totalProcessed"] == 3
    assert body["totalRemaining"] == 2
    assert {r["slug"]: r["status"] for r in body["results"]} == {
        "a": "ok", "b": "failed", "c": "ok", "d": "failed", "e": "ok",
    }
    # one productive pass, then three passes without progress
    assert service.comic_calls.count("b") == 4


def test_transient_failure_is_retried_once(tmp_path):
    _write_manifest(tmp_path / "slug.json", ["x"])
    service = FakeBatchService()
    service.flaky = {"x"}
    delays = []

    async def sleep(seconds):
        delays.append(seconds)

    status, body = asyncio.run(_runner(service, tmp_path, sleep=sleep).auto_json())

    assert status == 200
    assert body["results"] == [{"title": "X", "slug": "x", "status": "ok (retry)", "imagesCount": 1}]
    assert delays == [5]
    assert body["totalRemaining"] == 0


def test_soft_deadline_keeps_processing(tmp_path):
    _write_manifest(tmp_path / "slug.json", ["a", "b", "c", "d", "e", "f", "g"])
    service = FakeBatchService()
    service.delay = 0.03

    status, body = asyncio.run(_runner(service, tmp_path).auto_json(timeout=0.01))

    assert status == 200
    assert body["totalProcessed"] == 7
    assert body["totalRemaining"] == 0
    assert body["deadlineExtensions"] >= 1


def test_malformed_manifest_releases_lock(tmp_path):
    (tmp_path / "bad.json").write_text('{"success": false}', encoding="utf-8")
    runner = _runner(FakeBatchService(), tmp_path)
    with pytest.raises(InvalidRequest):
        asyncio.run(runner.auto_json("bad.json"))
    with pytest.raises(InvalidRequest):
        asyncio.run(runner.auto_json("missing.json"))
    assert not runner.lock.busy


def test_single_flight_across_batch_kinds(tmp_path):
    _write_manifest(tmp_path / "slug.json", ["a"])
    service = FakeBatchService()
    runner = _runner(service, tmp_path)

    async def scenario():
        service.gate = asyncio.Event()
        task = asyncio.create_task(runner.auto_json())
        while not runner.lock.busy:
            await asyncio.sleep(0)
        with pytest.raises(BatchInProgress) as info:
            await runner.auto_fetch("other")
        with pytest.raises(BatchInProgress):
            await runner.auto_thumbnail("other")
        service.gate.set()
        status, _ = await task
        return info.value, status

    conflict, status = asyncio.run(scenario())
    assert status == 200
    assert conflict.kind == "auto-json"
    assert conflict.describe()["startedAt"] > 0
    assert not runner.lock.busy


# ----- query auto-fetch -----

def test_auto_fetch_with_no_results(tmp_path):
    runner = _runner(FakeBatchService(), tmp_path)
    status, body = asyncio.run(runner.auto_fetch("test", 1))
    assert status == 200
    assert body == {"success": True, "totalFetched": 0, "results": []}
    assert not runner.lock.busy


def test_auto_fetch_processes_chapters(tmp_path):
    service = FakeBatchService()
    service.search_results[1] = [
        {"title": "One", "link": "https://doujindesu.tv/manga/one/"},
        {"title": "One again", "link": "https://doujindesu.tv/manga/one/"},
        {"title": "Two", "link": "https://doujindesu.tv/manga/two/"},
    ]
    service.details["one"] = {
        "title": "One",
        "chapters": [
            {"chapterTitle": "1", "chapterLink": "/one-chapter-1/"},
            {"chapterTitle": "2", "chapterLink": "/one-chapter-2/"},
        ],
    }
    service.failing = {"one-chapter-2"}

    status, body = asyncio.run(_runner(service, tmp_path).auto_fetch("q", 1))

    assert status == 200
    assert body["totalFetched"] == 2
    one, two = body["results"]
    assert one["chaptersFetched"] == 2
    assert [c["status"] for c in one["chapters"]] == ["ok", "failed"]
    assert two["status"] == "detail_failed"


def test_auto_fetch_deadline_returns_partial(tmp_path):
    service = FakeBatchService()
    service.delay = 1.0
    service.search_results[1] = [{"title": f"C{n}", "link": f"/manga/c{n}/"} for n in range(4)]
    for n in range(4):
        service.details[f"c{n}"] = {"title": f"C{n}", "chapters": [{"chapterTitle": "1", "chapterLink": f"/c{n}-1/"}]}

    runner = _runner(service, tmp_path)
    status, body = asyncio.run(runner.auto_fetch("q", 1, timeout=0.05))

    assert status == 202
    assert body["success"] is False
    assert len(body["partialResults"]) == 4
    assert body["partialResults"][0]["chapters"][0]["status"] == "aborted"
    assert body["partialResults"][3]["status"] == "partial"
    assert not runner.lock.busy


def test_auto_fetch_deadline_during_only_chunk_returns_partial(tmp_path):
    service = FakeBatchService()
    service.delay = 1.0
    service.search_results[1] = [{"title": "Solo", "link": "/manga/solo/"}]
    service.details["solo"] = {"title": "Solo", "chapters": [{"chapterTitle": "1", "chapterLink": "/solo-1/"}]}

    runner = _runner(service, tmp_path)
    status, body = asyncio.run(runner.auto_fetch("q", 1, timeout=0.05))

    assert status == 202
    assert body["success"] is False
    assert body["error"] == "Operation timed out"
    (solo,) = body["partialResults"]
    assert solo["chapters"][0]["status"] == "aborted"
    assert not runner.lock.busy


# ----- thumbnail harvesting -----

def test_auto_thumbnail_dedupes_and_caps_pages(tmp_path):
    service = FakeBatchService()
    service.search_results[1] = [
        {"thumbnail": "https://img.src/1.jpg"},
        {"thumbnail": "https://img.src/1.jpg"},
        {"thumbnail": "https://img.src/2.jpg"},
    ]

    status, body = asyncio.run(_runner(service, tmp_path).auto_thumbnail("q", 1, max_pages=50))

    assert status == 200
    assert body["startPage"] == 1
    assert body["endPage"] == 10
    assert body["processedPages"] == 10
    assert body["stats"] == {"total": 2, "success": 2, "failed": 0}
    assert service.rehosted == ["https://img.src/1.jpg", "https://img.src/2.jpg"]


def test_auto_thumbnail_deadline_during_only_page_returns_partial(tmp_path):
    service = FakeBatchService()
    service.rehost_delay = 1.0
    service.search_results[1] = [{"thumbnail": "https://img.src/slow.jpg"}]

    runner = _runner(service, tmp_path)
    status, body = asyncio.run(runner.auto_thumbnail("q", 1, max_pages=1, timeout=0.05))

    assert status == 202
    assert body["success"] is False
    assert body["error"] == "Operation timed out"
    assert body["processedPages"] == 0
    assert body["stats"] == {"total": 1, "success": 0, "failed": 1}
    assert body["thumbnails"][0]["status"] == "aborted"
    assert not runner.lock.busy


def test_auto_thumbnail_counts_only_finished_pages(tmp_path):
    service = FakeBatchService()
    service.rehost_delay = 1.0
    service.search_results[1] = [{"thumbnail": "https://img.src/a.jpg"}]
    service.search_results[2] = [{"thumbnail": "https://img.src/slow.jpg"}]

    runner = _runner(service, tmp_path)
    status, body = asyncio.run(runner.auto_thumbnail("q", 1, max_pages=3, timeout=0.2))

    assert status == 202
    assert body["processedPages"] == 1
    assert [t["status"] for t in body["thumbnails"]] == ["success", "aborted"]
    assert service.rehosted == ["https://img.src/a.jpg", "https://img.src/slow.jpg"]
