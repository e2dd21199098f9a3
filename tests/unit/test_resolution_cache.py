"""Unit tests for the epoch-versioned resolution cache."""

from stagegate.kernel.rules.cache import ResolutionCache
from stagegate.kernel.rules.catalog import Resource, ResourceCatalog
from stagegate.kernel.rules.registry import RuleRegistry
from stagegate.kernel.stages.definitions import ResourceKind
from stagegate.kernel.stages.stage_id import StageId

ITEM = ResourceKind.ITEM


class TestResolutionCache:
    """Tests for memoization and generation invalidation."""

    def _cache(self, make_stage, max_entries=16, resources=()):
        registry = RuleRegistry(ResourceCatalog(resources))
        registry.load([make_stage("s", items=["base:x"], names=["alloy"])])
        return registry, ResolutionCache(registry, max_entries=max_entries)

    def test_repeat_queries_hit(self, make_stage):
        _, cache = self._cache(make_stage)
        assert cache.resolve(ITEM, "base:x") == StageId.parse("s")
        assert cache.resolve(ITEM, "X") == StageId.parse("s")
        assert cache.misses == 1
        assert cache.hits == 1

    def test_unrestricted_answers_are_cached(self, make_stage):
        _, cache = self._cache(make_stage)
        assert cache.resolve(ITEM, "base:free") is None
        assert cache.resolve(ITEM, "base:free") is None
        assert cache.hits == 1

    def test_epoch_change_drops_generation(self, make_stage):
        """A stale answer is never served after the registry changes."""
        registry, cache = self._cache(make_stage)
        assert cache.resolve(ITEM, "base:x") == StageId.parse("s")

        registry.load([make_stage("other", items=["base:x"])])
        assert cache.resolve(ITEM, "base:x") == StageId.parse("other")
        stats = cache.stats()
        assert stats.epoch == registry.epoch
        assert stats.generations == 2
        assert stats.size == 1

    def test_lru_eviction(self, make_stage):
        _, cache = self._cache(make_stage, max_entries=2)
        cache.resolve(ITEM, "base:a")
        cache.resolve(ITEM, "base:b")
        cache.resolve(ITEM, "base:a")
        cache.resolve(ITEM, "base:c")
        assert cache.evictions == 1
        assert cache.stats().size == 2
        # base:b was least recently used
        misses = cache.misses
        cache.resolve(ITEM, "base:a")
        assert cache.misses == misses
        cache.resolve(ITEM, "base:b")
        assert cache.misses == misses + 1

    def test_resolve_all_materialized_once(self, make_stage):
        resources = [Resource.of(ITEM, "base:alloy_bar"), Resource.of(ITEM, "base:stone")]
        _, cache = self._cache(make_stage, resources=resources)
        first = cache.resolve_all(ITEM)
        second = cache.resolve_all(ITEM)
        assert first == second == {"base:alloy_bar": StageId.parse("s")}
        assert cache.hits == 1
        first["base:stone"] = StageId.parse("s")
        assert "base:stone" not in cache.resolve_all(ITEM)

    def test_interactions_cached(self, make_stage):
        _, cache = self._cache(make_stage)
        assert cache.resolve_interaction("use", "base:a", "base:b") is None
        assert cache.resolve_interaction("use", "base:a", "base:b") is None
        assert cache.hits == 1

    def test_malformed_id_not_cached(self, make_stage):
        _, cache = self._cache(make_stage)
        assert cache.resolve(ITEM, "bad id") is None
        assert cache.stats().size == 0

    def test_invalidate(self, make_stage):
        _, cache = self._cache(make_stage)
        cache.resolve(ITEM, "base:x")
        cache.invalidate()
        cache.resolve(ITEM, "base:x")
        assert cache.misses == 2
