"""Tests for EconomyMetrics text rendering."""

from __future__ import annotations

from puck_economy.metrics import EconomyMetrics


def test_render_includes_counters():
    metrics = EconomyMetrics()
    metrics.requests["/queueLaunch"] += 2
    metrics.errors["auth"] += 1
    metrics.purchases["success"] += 1
    metrics.rewards["duplicate_transaction"] += 1
    metrics.launches_queued_total = 4
    metrics.broadcasts_failed_total = 1

    text = metrics.render()

    assert 'economy_requests_total{route="/queueLaunch"} 2' in text
    assert 'economy_errors_total{kind="auth"} 1' in text
    assert 'economy_purchases_total{result="success"} 1' in text
    assert 'economy_rewards_total{result="duplicate_transaction"} 1' in text
    assert "economy_launches_queued_total 4" in text
    assert "economy_broadcasts_failed_total 1" in text
    assert text.endswith("\n")


def test_empty_metrics():
    lines = EconomyMetrics().collect_lines()
    assert lines[0].startswith("economy_uptime_seconds ")
    assert "economy_launches_queued_total 0" in lines
