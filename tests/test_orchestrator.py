"""
Tests for orchestrator.py.

Covers:
  - select_label priority list
  - web detection hints feeding the keyword label, and their failure paths
  - "coffee machine": image + keyword tiers merged, provenance + order kept
  - fallback monotonicity: one tier empty / failing, both failing, nothing at all
  - crop resolution: nested crops, pixel space, unresolvable boxes
  - cache hits, force_refresh, refresh(), fallback results not cached
  - history write-back
  - search_for_slot supersession
  - detect(): filtering, caching, history, missing / unknown providers
  - SearchRequest validation and handle() routing
"""
from __future__ import annotations

import asyncio
import sqlite3

import pytest

from errors import ErrorKind, ProviderHTTPError, StorageQuotaExceeded, UnreachableReference
from geometry import BoundingBox, CoordinateSpace, ImageDimensions, PixelRect
from history import AnalysisHistory, MemoryHistoryStore
from image_crop import ImgixCropProvider
from orchestrator import (
    SearchObject, SearchOptions, SearchOrchestrator, SearchRequest, SearchResult,
    WebEntity, select_label,
)
from providers.base import DetectedObject, Detector, WebDetection
from result_cache import MemoryCacheStorage, ResultCache
from search_backends.base import (
    FallbackBackend, ImageSimilarityBackend, KeywordBackend, ProductMatch, Provenance,
)
from search_backends.fallback_links import FallbackLinksBackend

IMAGE = "https://x.imgix.net/kitchen.jpg"
DIMS = ImageDimensions(5504, 8256)
BOX = BoundingBox(0.48, 0.53, 0.10, 0.11)


def _matches(prefix: str, provenance: Provenance, n: int) -> list[ProductMatch]:
    return [
        ProductMatch(title=f"{prefix} {i}", url=f"https://shop.example.com/{prefix}/{i}", provenance=provenance)
        for i in range(n)
    ]


class FakeImage(ImageSimilarityBackend):
    name = "fake_lens"

    def __init__(self, results=None, exc=None, delay=0.0):
        self.results = results if results is not None else _matches("img", Provenance.IMAGE, 3)
        self.exc = exc
        self.delay = delay
        self.calls = []

    async def search_by_image(self, image_ref, crop, max_results):
        self.calls.append((image_ref, crop, max_results))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc:
            raise self.exc
        return self.results[:max_results]


class FakeKeyword(KeywordBackend):
    name = "fake_shopping"

    def __init__(self, results=None, exc=None, delay=0.0):
        self.results = results if results is not None else _matches("kw", Provenance.KEYWORD, 3)
        self.exc = exc
        self.delay = delay
        self.calls = []

    async def search_by_keyword(self, text, max_results):
        self.calls.append((text, max_results))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc:
            raise self.exc
        return self.results[:max_results]


class FullDiskStorage(MemoryCacheStorage):
    """Cache storage on a full disk: writes hit the quota and eviction fails too."""

    async def put(self, entry):
        raise StorageQuotaExceeded("full")

    async def evict_oldest(self, n):
        raise sqlite3.OperationalError("database or disk is full")


class BrokenHistoryStore(MemoryHistoryStore):
    async def save(self, entries):
        raise OSError("read-only file system")


class EmptyFallback(FallbackBackend):
    name = "empty_fallback"

    async def search_by_keyword(self, text, max_results):
        return []


class FakeDetector(Detector):
    name = "fake_vision"

    def __init__(self, objects=None, exc=None):
        self.objects = objects or []
        self.exc = exc
        self.calls = 0

    async def detect(self, image, max_objects=10):
        self.calls += 1
        if self.exc:
            raise self.exc
        return list(self.objects)


class FakeWebDetector:
    name = "fake_web"

    def __init__(self, result=None, exc=None, delay=0.0):
        self.result = result or WebDetection()
        self.exc = exc
        self.delay = delay
        self.calls = []

    async def web_detect(self, image, max_results=10):
        self.calls.append(image)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc:
            raise self.exc
        return self.result


def make_orchestrator(
    image=None, keyword=None, fallback=None, detectors=None, clock=None, **kwargs,
) -> SearchOrchestrator:
    cache_kwargs = {"clock": clock} if clock else {}
    return SearchOrchestrator(
        image_backend=image if image is not None else FakeImage(),
        keyword_backend=keyword if keyword is not None else FakeKeyword(),
        fallback_backend=fallback or FallbackLinksBackend(),
        crop_provider=ImgixCropProvider(),
        cache=ResultCache(MemoryCacheStorage(), **cache_kwargs),
        history=AnalysisHistory(MemoryHistoryStore(), **cache_kwargs),
        detectors=detectors,
        **kwargs,
    )


# ── select_label ──────────────────────────────────────────────────────────────

class TestSelectLabel:
    def test_best_guess_wins(self):
        entities = [WebEntity("Breville Barista", 0.9)]
        assert select_label("coffee machine", "espresso maker", entities) == "espresso maker"

    def test_confident_web_entity_next(self):
        entities = [WebEntity("Kitchen", 0.4), WebEntity("Breville Barista", 0.8)]
        assert select_label("coffee machine", None, entities) == "Breville Barista"

    def test_entity_at_threshold_is_not_enough(self):
        assert select_label("coffee machine", None, [WebEntity("Breville", 0.5)]) == "coffee machine"

    def test_blank_entity_skipped(self):
        entities = [WebEntity("  ", 0.99), WebEntity("Breville", 0.7)]
        assert select_label("coffee machine", None, entities) == "Breville"

    def test_blank_best_guess_ignored(self):
        assert select_label("coffee machine", "  ") == "coffee machine"

    def test_detection_label_last(self):
        assert select_label(" coffee machine ") == "coffee machine"

    def test_custom_threshold(self):
        assert select_label("mug", None, [WebEntity("Cup", 0.6)], threshold=0.7) == "mug"


@pytest.mark.asyncio
class TestWebHints:
    async def test_best_guess_drives_keyword_query(self):
        keyword = FakeKeyword()
        web = FakeWebDetector(WebDetection("breville barista express", (WebEntity("Breville", 0.9),)))
        orch = make_orchestrator(keyword=keyword, web_detector=web)
        result = await orch.search(SearchObject("coffee machine", BOX), IMAGE, DIMS)

        assert web.calls == [IMAGE]
        assert keyword.calls[0][0] == "breville barista express"
        assert result.query == "breville barista express"

    async def test_confident_entity_without_best_guess(self):
        keyword = FakeKeyword()
        web = FakeWebDetector(WebDetection(None, (WebEntity("Breville", 0.8),)))
        orch = make_orchestrator(keyword=keyword, web_detector=web)
        await orch.search(SearchObject("coffee machine", BOX), IMAGE, DIMS)
        assert keyword.calls[0][0] == "Breville"

    async def test_caller_hints_skip_web_detection(self):
        keyword = FakeKeyword()
        web = FakeWebDetector(WebDetection("breville barista express"))
        orch = make_orchestrator(keyword=keyword, web_detector=web)
        options = SearchOptions(best_guess_label="espresso maker")
        await orch.search(SearchObject("coffee machine", BOX), IMAGE, DIMS, options)

        assert web.calls == []
        assert keyword.calls[0][0] == "espresso maker"

    async def test_failure_falls_back_to_object_label(self):
        keyword = FakeKeyword()
        web = FakeWebDetector(exc=ProviderHTTPError("fake_web", 429, "rate limited"))
        orch = make_orchestrator(keyword=keyword, web_detector=web)
        result = await orch.search(SearchObject("coffee machine", BOX), IMAGE, DIMS)

        assert result.success
        assert result.search_type == "image+keyword"
        assert keyword.calls[0][0] == "coffee machine"

    async def test_slow_web_detection_is_bounded(self):
        keyword = FakeKeyword()
        web = FakeWebDetector(WebDetection("breville barista express"), delay=1.0)
        orch = make_orchestrator(keyword=keyword, web_detector=web, detection_timeout=0.05)
        await orch.search(SearchObject("coffee machine", BOX), IMAGE, DIMS)
        assert keyword.calls[0][0] == "coffee machine"

    async def test_text_search_does_not_call_web_detection(self):
        web = FakeWebDetector(WebDetection("breville barista express"))
        orch = make_orchestrator(web_detector=web)
        await orch.search_text("coffee machine")
        assert web.calls == []


# ── Merging ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestMerge:
    async def test_coffee_machine_scenario(self):
        image = FakeImage(_matches("lens", Provenance.IMAGE, 2))
        keyword = FakeKeyword(_matches("shop", Provenance.KEYWORD, 3))
        orch = make_orchestrator(image, keyword)

        result = await orch.search(SearchObject("coffee machine", BOX), IMAGE, DIMS)

        assert result.success
        assert result.search_type == "image+keyword"
        assert result.provenances == {"image", "keyword"}
        assert [m.title for m in result.matches] == [
            "lens 0", "lens 1", "shop 0", "shop 1", "shop 2",
        ]
        assert keyword.calls == [("coffee machine", 10)]
        assert result.source == "fake_lens+fake_shopping"

    async def test_keyword_only_search_is_tagged_keyword(self):
        result = await make_orchestrator().search_text("coffee machine")
        assert result.provenances == {"keyword"}
        assert result.search_type == "keyword"

    async def test_image_tier_receives_resolved_crop(self):
        image = FakeImage()
        await make_orchestrator(image).search(SearchObject("coffee machine", BOX), IMAGE, DIMS)
        assert image.calls == [(IMAGE, PixelRect(2642, 4376, 550, 908), 10)]

    async def test_max_results_per_tier(self):
        image = FakeImage(_matches("lens", Provenance.IMAGE, 5))
        keyword = FakeKeyword(_matches("shop", Provenance.KEYWORD, 5))
        result = await make_orchestrator(image, keyword).search(
            SearchObject("lamp", BOX), IMAGE, DIMS, SearchOptions(max_results=2),
        )
        assert len(result.matches) == 4

    async def test_tiers_run_concurrently(self):
        image = FakeImage(delay=0.2)
        keyword = FakeKeyword(delay=0.2)
        loop = asyncio.get_running_loop()
        started = loop.time()
        await make_orchestrator(image, keyword).search(SearchObject("lamp", BOX), IMAGE, DIMS)
        assert loop.time() - started < 0.39


# ── Fallback monotonicity ─────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestFallbackChain:
    async def test_empty_image_tier_keeps_keyword_matches(self):
        result = await make_orchestrator(FakeImage([])).search(SearchObject("lamp", BOX), IMAGE, DIMS)
        assert result.success
        assert result.search_type == "keyword"
        assert len(result.matches) == 3

    async def test_failing_image_tier_keeps_keyword_matches(self):
        image = FakeImage(exc=ProviderHTTPError("fake_lens", 500, "boom"))
        result = await make_orchestrator(image).search(SearchObject("lamp", BOX), IMAGE, DIMS)
        assert result.search_type == "keyword"
        assert [e.kind for e in result.tier_errors] == [ErrorKind.PROVIDER_HTTP_ERROR]
        assert result.tier_errors[0].status == 500

    async def test_failing_keyword_tier_keeps_image_matches(self):
        keyword = FakeKeyword(exc=RuntimeError("parser bug"))
        result = await make_orchestrator(keyword=keyword).search(SearchObject("lamp", BOX), IMAGE, DIMS)
        assert result.search_type == "image"
        assert result.provenances == {"image"}

    async def test_image_timeout_does_not_block_keyword(self):
        image = FakeImage(delay=1.0)
        orch = make_orchestrator(image, image_timeout=0.05)
        result = await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        assert result.search_type == "keyword"
        assert result.tier_errors[0].kind == ErrorKind.PROVIDER_TIMEOUT

    async def test_both_tiers_failing_gives_fallback_links(self):
        image = FakeImage(exc=UnreachableReference("local"))
        keyword = FakeKeyword(exc=ProviderHTTPError("fake_shopping", 429, ""))
        result = await make_orchestrator(image, keyword).search(SearchObject("lamp", BOX), IMAGE, DIMS)

        assert result.success
        assert result.search_type == "fallback"
        assert result.provenances == {"fallback"}
        assert result.matches[0].title == "Search on Amazon"
        assert {e.kind for e in result.tier_errors} == {
            ErrorKind.UNREACHABLE_REFERENCE, ErrorKind.PROVIDER_HTTP_ERROR,
        }

    async def test_everything_empty_is_explicit_failure(self):
        orch = make_orchestrator(FakeImage([]), FakeKeyword([]), EmptyFallback())
        result = await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        assert not result.success
        assert result.matches == ()
        assert result.error.kind == ErrorKind.NO_RESULTS
        assert result.error.message

    async def test_no_label_and_no_image(self):
        result = await make_orchestrator().search(SearchObject("", None), None)
        assert not result.success
        assert result.error.kind == ErrorKind.NO_RESULTS

    async def test_no_image_backend_configured(self):
        orch = SearchOrchestrator(
            image_backend=None,
            keyword_backend=FakeKeyword(),
            fallback_backend=FallbackLinksBackend(),
            crop_provider=ImgixCropProvider(),
            cache=ResultCache(MemoryCacheStorage()),
            history=AnalysisHistory(MemoryHistoryStore()),
        )
        result = await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        assert result.search_type == "keyword"


# ── Crop resolution ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestCropResolution:
    async def test_box_on_already_cropped_image_is_composed(self):
        image = FakeImage()
        ref = "https://x.imgix.net/kitchen.jpg?rect=1000,2000,800,400&w=500"
        await make_orchestrator(image).search(
            SearchObject("mug", BoundingBox(0.5, 0.5, 0.25, 0.5)), ref, DIMS,
        )
        assert image.calls[0][1] == PixelRect(1400, 2200, 200, 200)

    async def test_pixel_space_box(self):
        image = FakeImage()
        await make_orchestrator(image).search(
            SearchObject("mug", BoundingBox(10, 20, 300, 400)), IMAGE, None,
            SearchOptions(coordinate_space=CoordinateSpace.PIXELS),
        )
        assert image.calls[0][1] == PixelRect(10, 20, 300, 400)

    async def test_no_box_searches_whole_image(self):
        image = FakeImage()
        await make_orchestrator(image).search(SearchObject("mug"), IMAGE)
        assert image.calls[0][1] is None

    async def test_unresolvable_box_skips_image_tier(self):
        image = FakeImage()
        result = await make_orchestrator(image).search(SearchObject("mug", BOX), IMAGE, None)
        assert image.calls == []
        assert result.search_type == "keyword"
        assert result.tier_errors[0].kind == ErrorKind.INVALID_DIMENSIONS

    async def test_box_in_wrong_space_skips_image_tier(self):
        image = FakeImage()
        result = await make_orchestrator(image).search(
            SearchObject("mug", BoundingBox(1.5, 0.1, 0.3, 0.2)), IMAGE, DIMS,
        )
        assert image.calls == []
        assert result.search_type == "keyword"
        assert result.tier_errors[0].kind == ErrorKind.INVALID_CROP

    async def test_degenerate_box_skips_image_tier(self):
        image = FakeImage()
        result = await make_orchestrator(image).search(
            SearchObject("mug", BoundingBox(0.5, 0.5, 0.00001, 0.1)), IMAGE, DIMS,
        )
        assert image.calls == []
        assert result.tier_errors[0].kind == ErrorKind.INVALID_CROP


# ── Cache + history ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestCacheAndHistory:
    async def test_second_search_is_cache_hit(self):
        image, keyword = FakeImage(), FakeKeyword()
        orch = make_orchestrator(image, keyword)
        first = await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        second = await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)

        assert not first.from_cache
        assert second.from_cache
        assert second.matches == first.matches
        assert second.request_id == first.request_id
        assert len(image.calls) == len(keyword.calls) == 1

    async def test_different_box_is_a_different_entry(self):
        image = FakeImage()
        orch = make_orchestrator(image)
        await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        await orch.search(SearchObject("lamp", BoundingBox(0.1, 0.1, 0.2, 0.2)), IMAGE, DIMS)
        assert len(image.calls) == 2

    async def test_force_refresh_bypasses_cache(self):
        image = FakeImage()
        orch = make_orchestrator(image)
        await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        result = await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS, SearchOptions(force_refresh=True))
        assert not result.from_cache
        assert len(image.calls) == 2

    async def test_refresh_invalidates_every_entry_for_the_image(self):
        image = FakeImage()
        orch = make_orchestrator(image)
        await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        other_box = BoundingBox(0.1, 0.1, 0.2, 0.2)
        await orch.search(SearchObject("mug", other_box), IMAGE, DIMS)

        await orch.refresh(SearchObject("lamp", BOX), IMAGE, DIMS)
        again = await orch.search(SearchObject("mug", other_box), IMAGE, DIMS)
        assert not again.from_cache
        assert len(image.calls) == 4

    async def test_fallback_results_are_not_cached(self):
        keyword = FakeKeyword([])
        orch = make_orchestrator(FakeImage([]), keyword)
        first = await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        second = await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        assert first.search_type == second.search_type == "fallback"
        assert not second.from_cache
        assert len(keyword.calls) == 2

    async def test_expired_cache_entry_triggers_new_search(self, clock):
        image = FakeImage()
        orch = make_orchestrator(image, clock=clock)
        await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        clock.advance(24 * 60 * 60 + 1)
        result = await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        assert not result.from_cache
        assert len(image.calls) == 2

    async def test_search_records_history(self):
        orch = make_orchestrator()
        await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        await orch.search(SearchObject("mug", BoundingBox(0, 0, 0.5, 0.5)), IMAGE, DIMS)
        entries = await orch.recent_history()
        assert len(entries) == 1
        assert entries[0].provider == "fake_lens+fake_shopping"

    async def test_failed_search_not_in_history(self):
        orch = make_orchestrator(FakeImage([]), FakeKeyword([]), EmptyFallback())
        await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        assert await orch.recent_history() == []

    async def test_fallback_result_recorded_in_history(self):
        orch = make_orchestrator(FakeImage([]), FakeKeyword([]))
        await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        [entry] = await orch.recent_history()
        assert entry.provider == "fallback_links"

    async def test_cache_write_failure_keeps_result(self):
        orch = make_orchestrator()
        orch.cache = ResultCache(FullDiskStorage())
        result = await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        assert result.success
        assert result.search_type == "image+keyword"
        assert (await orch.cache.stats())["write_failures"] == 1

    async def test_cache_write_failure_keeps_detection_result(self):
        orch = make_orchestrator(detectors={"fake_vision": FakeDetector(_objects())})
        orch.cache = ResultCache(FullDiskStorage())
        result = await orch.detect(IMAGE)
        assert result.success
        assert len(result.objects) == 2

    async def test_history_failure_keeps_result(self):
        orch = make_orchestrator()
        orch.history = AnalysisHistory(BrokenHistoryStore())
        result = await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        assert result.success

    async def test_corrupt_cached_payload_is_a_miss(self):
        image = FakeImage()
        orch = make_orchestrator(image)
        await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        [key] = await orch.cache._storage.keys()
        await orch.cache.put(key, {"unexpected": "shape"})
        result = await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        assert not result.from_cache
        assert len(image.calls) == 2


# ── Supersession ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestSearchForSlot:
    async def test_latest_request_wins(self):
        image = FakeImage(delay=0.1)
        orch = make_orchestrator(image)
        stale_task = asyncio.create_task(
            orch.search_for_slot("panel", SearchObject("lamp", BOX), IMAGE, DIMS)
        )
        await asyncio.sleep(0.01)
        fresh = await orch.search_for_slot(
            "panel", SearchObject("mug", BoundingBox(0, 0, 0.5, 0.5)), IMAGE, DIMS,
        )
        stale = await stale_task

        assert stale is None
        assert fresh is not None and fresh.success

    async def test_superseded_result_still_cached(self):
        image = FakeImage(delay=0.1)
        orch = make_orchestrator(image)
        stale_task = asyncio.create_task(
            orch.search_for_slot("panel", SearchObject("lamp", BOX), IMAGE, DIMS)
        )
        await asyncio.sleep(0.01)
        await orch.search_for_slot("panel", SearchObject("mug"), IMAGE)
        assert await stale_task is None

        cached = await orch.search(SearchObject("lamp", BOX), IMAGE, DIMS)
        assert cached.from_cache

    async def test_independent_slots(self):
        orch = make_orchestrator(FakeImage(delay=0.05))
        a, b = await asyncio.gather(
            orch.search_for_slot("left", SearchObject("lamp", BOX), IMAGE, DIMS),
            orch.search_for_slot("right", SearchObject("mug", BOX), IMAGE, DIMS),
        )
        assert a is not None and b is not None


# ── Detection ─────────────────────────────────────────────────────────────────

def _objects():
    return [
        DetectedObject("obj_1", "coffee machine", 0.87, BOX),
        DetectedObject("obj_2", "mug", 0.3, BoundingBox(0.1, 0.1, 0.1, 0.1)),
        DetectedObject("obj_3", "kettle", 0.66, BoundingBox(0.6, 0.1, 0.2, 0.3)),
    ]


@pytest.mark.asyncio
class TestDetect:
    async def test_filters_by_threshold(self):
        detector = FakeDetector(_objects())
        orch = make_orchestrator(detectors={"fake_vision": detector})
        result = await orch.detect(IMAGE)
        assert result.success
        assert [o.label for o in result.objects] == ["coffee machine", "kettle"]
        assert result.provider == "fake_vision"

    async def test_cached_by_image(self):
        detector = FakeDetector(_objects())
        orch = make_orchestrator(detectors={"fake_vision": detector})
        first = await orch.detect(IMAGE)
        second = await orch.detect(IMAGE)
        assert second.from_cache
        assert second.objects == first.objects
        assert detector.calls == 1

    async def test_threshold_is_part_of_the_key(self):
        detector = FakeDetector(_objects())
        orch = make_orchestrator(detectors={"fake_vision": detector})
        await orch.detect(IMAGE)
        low = await orch.detect(IMAGE, threshold=0.1)
        assert len(low.objects) == 3
        assert detector.calls == 2

    async def test_force_refresh(self):
        detector = FakeDetector(_objects())
        orch = make_orchestrator(detectors={"fake_vision": detector})
        await orch.detect(IMAGE)
        await orch.detect(IMAGE, force_refresh=True)
        assert detector.calls == 2

    async def test_records_object_count(self):
        orch = make_orchestrator(detectors={"fake_vision": FakeDetector(_objects())})
        await orch.detect(IMAGE)
        [entry] = await orch.recent_history()
        assert entry.object_count == 2
        assert entry.provider == "fake_vision"

    async def test_search_after_detect_keeps_object_count(self):
        orch = make_orchestrator(detectors={"fake_vision": FakeDetector(_objects())})
        await orch.detect(IMAGE)
        await orch.search(SearchObject("coffee machine", BOX), IMAGE, DIMS)
        [entry] = await orch.recent_history()
        assert entry.object_count == 2

    async def test_provider_failure_is_a_result(self):
        detector = FakeDetector(exc=ProviderHTTPError("fake_vision", 403, "denied"))
        orch = make_orchestrator(detectors={"fake_vision": detector})
        result = await orch.detect(IMAGE)
        assert not result.success
        assert result.error.status == 403
        assert await orch.recent_history() == []

    async def test_no_detectors(self):
        result = await make_orchestrator().detect(IMAGE)
        assert not result.success
        assert result.error.kind == ErrorKind.PROVIDER_AUTH_MISSING

    async def test_unknown_provider_raises(self):
        orch = make_orchestrator(detectors={"fake_vision": FakeDetector()})
        with pytest.raises(ValueError):
            await orch.detect(IMAGE, provider="nope")

    async def test_bytes_input(self):
        detector = FakeDetector(_objects())
        orch = make_orchestrator(detectors={"fake_vision": detector})
        result = await orch.detect(b"\xff\xd8\xff\xe0")
        assert result.success


# ── SearchRequest / handle ────────────────────────────────────────────────────

class TestSearchRequest:
    def test_needs_query_or_image(self):
        with pytest.raises(ValueError):
            SearchRequest()

    def test_blank_query_without_image(self):
        with pytest.raises(ValueError):
            SearchRequest(query="   ")

    def test_query_only(self):
        assert SearchRequest(query="lamp").query == "lamp"


@pytest.mark.asyncio
class TestHandle:
    async def test_text_request_uses_keyword_tier_only(self):
        image = FakeImage()
        result = await make_orchestrator(image).handle(SearchRequest(query="lamp"))
        assert image.calls == []
        assert result.search_type == "keyword"

    async def test_image_request(self):
        image = FakeImage()
        result = await make_orchestrator(image).handle(
            SearchRequest(query="lamp", image_ref=IMAGE, crop=BOX, image_dimensions=DIMS)
        )
        assert result.search_type == "image+keyword"
        assert image.calls[0][1] == PixelRect(2642, 4376, 550, 908)


class TestSearchResult:
    def test_dict_round_trip(self):
        result = SearchResult(
            matches=tuple(_matches("a", Provenance.IMAGE, 2)),
            source="fake_lens",
            search_type="image",
            processing_time_ms=12,
            success=True,
            query="lamp",
        )
        back = SearchResult.from_dict(result.to_dict(), from_cache=True)
        assert back.matches == result.matches
        assert back.from_cache
        assert back.request_id == result.request_id
