# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Tests for metrics collection."""

from storyloom.metrics import (
    MetricsCollector,
    LatencyStats,
    init_metrics_collector,
    disable_metrics_collector,
    get_metrics_collector,
    MetricsTimer
)


def test_latency_stats():
    """Test LatencyStats calculations."""
    stats = LatencyStats()

    stats.record(100.0)
    stats.record(200.0)
    stats.record(150.0)

    assert stats.count == 3
    assert stats.total == 450.0
    assert stats.min == 100.0
    assert stats.max == 200.0
    assert stats.avg == 150.0

    data = stats.to_dict()
    assert data['count'] == 3
    assert data['avg_ms'] == 150.0
    assert data['min_ms'] == 100.0
    assert data['max_ms'] == 200.0


def test_latency_stats_dimensionless():
    stats = LatencyStats()
    stats.record(42)

    data = stats.to_dict(unit="")
    assert data == {"count": 1, "avg": 42.0, "min": 42.0, "max": 42.0}


def test_metrics_collector_requests():
    """Test request metrics recording."""
    collector = MetricsCollector()

    collector.record_request(200)
    collector.record_request(201)
    collector.record_request(404)
    collector.record_request(503)

    metrics = collector.get_metrics()

    assert metrics['requests']['total'] == 4
    assert metrics['requests']['success'] == 2
    assert metrics['requests']['errors'] == 2
    assert metrics['requests']['by_status_code'][404] == 1


def test_metrics_collector_errors():
    collector = MetricsCollector()

    collector.record_error("session_not_found")
    collector.record_error("rate_limited")
    collector.record_error("session_not_found")

    assert collector.get_metrics()['errors']['by_type'] == {
        "session_not_found": 2,
        "rate_limited": 1,
    }


def test_metrics_collector_parse_kinds():
    """Test that the conformance rate is the share of strict parses."""
    collector = MetricsCollector()

    collector.record_parse_kind("strict")
    collector.record_parse_kind("strict")
    collector.record_parse_kind("strict")
    collector.record_parse_kind("recovered")
    collector.record_tokens(120)
    collector.record_tokens(80)

    narration = collector.get_metrics()['narration']
    assert narration['total_parses'] == 4
    assert narration['by_kind'] == {"strict": 3, "recovered": 1}
    assert narration['conformance_rate'] == 0.75
    assert narration['tokens_per_call']['avg'] == 100.0


def test_metrics_collector_image_outcomes():
    collector = MetricsCollector()

    collector.record_image_outcome("generated")
    collector.record_image_outcome("cached")
    collector.record_image_outcome("failed_rate_limit")

    assert collector.get_metrics()['illustration']['by_outcome'] == {
        "generated": 1,
        "cached": 1,
        "failed_rate_limit": 1,
    }


def test_metrics_collector_reset():
    collector = MetricsCollector()
    collector.record_request(200)
    collector.record_parse_kind("synthetic")
    collector.record_latency("turn", 10.0)

    collector.reset()

    metrics = collector.get_metrics()
    assert metrics['requests']['total'] == 0
    assert metrics['narration']['total_parses'] == 0
    assert metrics['latencies'] == {}


def test_global_collector_lifecycle():
    """Test init/get/disable of the global collector."""
    disable_metrics_collector()
    assert get_metrics_collector() is None

    collector = init_metrics_collector()
    assert get_metrics_collector() is collector
    assert init_metrics_collector() is collector

    disable_metrics_collector()
    assert get_metrics_collector() is None


def test_metrics_timer_records_latency():
    collector = init_metrics_collector()
    collector.reset()
    try:
        with MetricsTimer("narration"):
            pass

        latencies = collector.get_metrics()['latencies']
        assert latencies['narration']['count'] == 1
    finally:
        disable_metrics_collector()


def test_metrics_timer_without_collector():
    """Test that MetricsTimer is a no-op when metrics are disabled."""
    disable_metrics_collector()

    with MetricsTimer("turn") as timer:
        pass

    assert timer.collector is None
