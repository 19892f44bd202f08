from __future__ import annotations

from utility_hub import metrics


def test_metrics_registry_records_and_formats() -> None:
    registry = metrics.MetricsRegistry()
    metrics.install_registry(registry)
    try:
        metrics.record_operation("call_tool")
        metrics.record_operation("list_tools", count=2)
        metrics.record_error("not_found")
        metrics.record_refresh("failed", count=3)

        snapshot = registry.snapshot()
        text = metrics.format_prometheus(snapshot, builtin_tools_current=14, custom_tools_current=2)

        assert 'utility_hub_ops_total{op="call_tool"} 1' in text
        assert 'utility_hub_ops_total{op="list_tools"} 2' in text
        assert 'utility_hub_ops_total{op="upsert"} 0' in text
        assert 'utility_hub_errors_total{code="NOT_FOUND"} 1' in text
        assert 'utility_hub_registry_refreshes_total{outcome="failed"} 3' in text
        assert 'utility_hub_registry_refreshes_total{outcome="ok"} 0' in text
        assert "utility_hub_builtin_tools_current 14" in text
        assert "utility_hub_custom_tools_current 2" in text
        assert "utility_hub_uptime_seconds" in text
    finally:
        metrics.install_registry(None)


def test_empty_errors_render_placeholder() -> None:
    text = metrics.format_prometheus(
        metrics.MetricsRegistry().snapshot(), builtin_tools_current=0, custom_tools_current=0
    )

    assert 'utility_hub_errors_total{code="none"} 0' in text


def test_reset_clears_counters() -> None:
    registry = metrics.MetricsRegistry()
    registry.record_operation("call_tool", count=4)
    registry.record_operation("ignored", count=0)

    registry.reset()

    assert registry.snapshot().operations["call_tool"] == 0
    assert "ignored" not in registry.snapshot().operations


def test_record_helpers_no_registry() -> None:
    metrics.install_registry(None)
    # Should no-op without raising when registry is not installed.
    metrics.record_operation("call_tool")
    metrics.record_error("NOT_FOUND")
    metrics.record_refresh("ok")
