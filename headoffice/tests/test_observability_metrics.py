from headoffice.observability.metrics import InMemoryMetrics
from headoffice.tenancy.connection_strings import build_descriptor
from headoffice.tenancy.context_cache import BranchContextCache


def test_metrics_snapshot_includes_latency_percentiles_and_counts():
    m = InMemoryMetrics(latency_window=10)

    m.observe_request("/api/health", 200, 12.0)
    m.observe_request("/api/health", 200, 24.0)
    m.observe_request("/api/v1/branches", 500, 200.0)

    snap = m.snapshot()

    assert snap["requests_total"] == 3
    assert snap["status_counts"]["2xx"] == 2
    assert snap["status_counts"]["5xx"] == 1
    assert snap["path_counts"]["/api/health"] == 2
    assert snap["latency_ms"]["samples"] == 3
    assert snap["latency_ms"]["p95"] >= snap["latency_ms"]["p50"]
    assert "branch_cache" not in snap


def test_metrics_snapshot_reports_bound_cache(make_branch, data_root):
    cache = BranchContextCache(builder=lambda b: build_descriptor(b, data_root))
    cache.get_or_build(make_branch())
    cache.get_or_build(make_branch())

    m = InMemoryMetrics()
    m.bind_cache(cache.stats)

    assert m.snapshot()["branch_cache"] == {"entries": 1, "hits": 1, "misses": 1, "invalidations": 0}
