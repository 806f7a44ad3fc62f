import threading
import time
from typing import Any


_lock = threading.Lock()
_metrics: dict[str, float] = {
    "ws_connections_active": 0.0,
    "sessions_active": 0.0,
    "ws_disconnects_total": 0.0,
    "ws_disconnect_client_disconnect": 0.0,
    "ws_disconnect_receive_error": 0.0,
    "ws_disconnect_other": 0.0,
    "sessions_created": 0.0,
    "sessions_completed": 0.0,
    "questions_generated_ai": 0.0,
    "questions_generated_fallback": 0.0,
    "evaluations_ai": 0.0,
    "evaluations_heuristic": 0.0,
    "voice_streams_finalized": 0.0,
    "voice_streams_incomplete": 0.0,
    "voice_buffers_expired": 0.0,
    "stale_results_discarded": 0.0,
    "ai_latency_total_ms": 0.0,
    "ai_latency_samples": 0.0,
    "stt_latency_total_ms": 0.0,
    "stt_latency_samples": 0.0,
}


def increment_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        _metrics[key] = float(_metrics.get(key, 0.0)) + float(amount)


def decrement_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        next_value = float(_metrics.get(key, 0.0)) - float(amount)
        _metrics[key] = max(0.0, next_value)


def set_metric(name: str, value: float) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        _metrics[key] = max(0.0, float(value))


def observe_ai_latency_ms(value_ms: float) -> None:
    latency = max(0.0, float(value_ms or 0.0))
    with _lock:
        _metrics["ai_latency_total_ms"] = float(_metrics.get("ai_latency_total_ms", 0.0)) + latency
        _metrics["ai_latency_samples"] = float(_metrics.get("ai_latency_samples", 0.0)) + 1.0


def observe_stt_latency_ms(value_ms: float) -> None:
    latency = max(0.0, float(value_ms or 0.0))
    with _lock:
        _metrics["stt_latency_total_ms"] = float(_metrics.get("stt_latency_total_ms", 0.0)) + latency
        _metrics["stt_latency_samples"] = float(_metrics.get("stt_latency_samples", 0.0)) + 1.0


def record_ws_disconnect(reason: str) -> None:
    normalized = str(reason or "").strip().lower().replace(" ", "_").replace("-", "_")
    key_map = {
        "client_disconnect": "ws_disconnect_client_disconnect",
        "receive_error": "ws_disconnect_receive_error",
    }
    metric_key = key_map.get(normalized, "ws_disconnect_other")
    with _lock:
        _metrics["ws_disconnects_total"] = float(_metrics.get("ws_disconnects_total", 0.0)) + 1.0
        _metrics[metric_key] = float(_metrics.get(metric_key, 0.0)) + 1.0


def get_metrics_snapshot(extra: dict[str, Any] | None = None) -> dict[str, Any]:
    with _lock:
        data = dict(_metrics)

    ai_samples = max(1.0, float(data.get("ai_latency_samples") or 0.0))
    stt_samples = max(1.0, float(data.get("stt_latency_samples") or 0.0))

    payload: dict[str, Any] = {"generated_at": time.time()}
    for key, value in data.items():
        if key.endswith("_total_ms"):
            payload[key] = float(value or 0.0)
        else:
            payload[key] = int(value or 0.0)

    payload["avg_ai_latency_ms"] = round(float(data.get("ai_latency_total_ms") or 0.0) / ai_samples, 2)
    payload["avg_stt_latency_ms"] = round(float(data.get("stt_latency_total_ms") or 0.0) / stt_samples, 2)

    if extra:
        payload.update(extra)
    return payload
