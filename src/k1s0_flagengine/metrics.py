"""OpenTelemetry によるフラグ評価メトリクス定義"""

from __future__ import annotations

from opentelemetry import metrics

_meter = metrics.get_meter("k1s0.flagengine", version="0.1.0")

flag_evaluations_total = _meter.create_counter(
    name="flag_evaluations_total",
    description="Total number of flag evaluations",
    unit="1",
)

flag_cache_hits_total = _meter.create_counter(
    name="flag_cache_hits_total",
    description="Total number of flag evaluations served from cache",
    unit="1",
)

flag_evaluation_duration_seconds = _meter.create_histogram(
    name="flag_evaluation_duration_seconds",
    description="Flag evaluation duration in seconds",
    unit="s",
)

flag_refresh_total = _meter.create_counter(
    name="flag_refresh_total",
    description="Total number of flag definition refreshes by outcome",
    unit="1",
)
