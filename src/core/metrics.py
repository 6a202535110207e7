"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import Dict, List, Tuple


_lock = Lock()
_started_at = time.time()

_http_requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
_http_request_duration_sum: Dict[Tuple[str, str], float] = defaultdict(float)
_http_request_duration_count: Dict[Tuple[str, str], int] = defaultdict(int)
_jobs_finished_total: Dict[Tuple[str, str], int] = defaultdict(int)
_provider_calls_total: Dict[Tuple[str, str], int] = defaultdict(int)
_provider_tokens_total: Dict[str, int] = defaultdict(int)
_content_generated_total: Dict[str, int] = defaultdict(int)
_images_generated_total: Dict[str, int] = defaultdict(int)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _normalize_label(value: str, *, fallback: str = "unknown") -> str:
    normalized = (value or "").strip()
    return normalized or fallback


def record_http_request(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    status = str(status_code)
    method_label = method.upper()
    path_label = path or "unknown"
    duration = max(duration_seconds, 0.0)

    with _lock:
        _http_requests_total[(method_label, path_label, status)] += 1
        _http_request_duration_sum[(method_label, path_label)] += duration
        _http_request_duration_count[(method_label, path_label)] += 1


def record_job_finished(*, job_type: str, status: str) -> None:
    with _lock:
        _jobs_finished_total[(_normalize_label(job_type), _normalize_label(status))] += 1


def record_provider_call(*, provider: str, outcome: str, tokens: int = 0) -> None:
    with _lock:
        _provider_calls_total[(_normalize_label(provider), _normalize_label(outcome))] += 1
        if tokens > 0:
            _provider_tokens_total[_normalize_label(provider)] += int(tokens)


def record_content_generated(*, category: str, count: int = 1) -> None:
    if count <= 0:
        return
    with _lock:
        _content_generated_total[_normalize_label(category)] += int(count)


def record_images_generated(*, provider: str, count: int = 1) -> None:
    if count <= 0:
        return
    with _lock:
        _images_generated_total[_normalize_label(provider)] += int(count)


def _counter_block(name: str, help_text: str, rows: List[Tuple[str, int]]) -> List[str]:
    lines = [f"# HELP {name} {help_text}", f"# TYPE {name} counter"]
    for labels, value in rows:
        lines.append(f"{name}{{{labels}}} {value}")
    return lines


def render_prometheus_metrics(*, app_name: str, app_version: str, env: str) -> str:
    uptime = max(time.time() - _started_at, 0.0)

    with _lock:
        http_total = dict(_http_requests_total)
        duration_sum = dict(_http_request_duration_sum)
        duration_count = dict(_http_request_duration_count)
        jobs_total = dict(_jobs_finished_total)
        provider_total = dict(_provider_calls_total)
        tokens_total = dict(_provider_tokens_total)
        content_total = dict(_content_generated_total)
        images_total = dict(_images_generated_total)

    lines = [
        "# HELP eden_build_info Build metadata.",
        "# TYPE eden_build_info gauge",
        (
            f'eden_build_info{{app_name="{_escape_label(app_name)}",'
            f'version="{_escape_label(app_version)}",env="{_escape_label(env)}"}} 1'
        ),
        "# HELP eden_process_uptime_seconds Process uptime in seconds.",
        "# TYPE eden_process_uptime_seconds gauge",
        f"eden_process_uptime_seconds {uptime:.6f}",
        "# HELP eden_http_requests_total Total HTTP requests.",
        "# TYPE eden_http_requests_total counter",
    ]

    for (method, path, status), value in sorted(http_total.items()):
        lines.append(
            (
                f'eden_http_requests_total{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}",status="{_escape_label(status)}"}} {value}'
            )
        )

    lines.extend(
        [
            "# HELP eden_http_request_duration_seconds Request duration summary.",
            "# TYPE eden_http_request_duration_seconds summary",
        ]
    )
    for (method, path), value in sorted(duration_sum.items()):
        lines.append(
            (
                f'eden_http_request_duration_seconds_sum{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value:.6f}'
            )
        )
    for (method, path), value in sorted(duration_count.items()):
        lines.append(
            (
                f'eden_http_request_duration_seconds_count{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value}'
            )
        )

    lines.extend(
        _counter_block(
            "eden_jobs_finished_total",
            "Jobs reaching a terminal or requeued state.",
            [
                (f'job_type="{_escape_label(job_type)}",status="{_escape_label(status)}"', value)
                for (job_type, status), value in sorted(jobs_total.items())
            ],
        )
    )
    lines.extend(
        _counter_block(
            "eden_provider_calls_total",
            "Provider calls by outcome.",
            [
                (f'provider="{_escape_label(provider)}",outcome="{_escape_label(outcome)}"', value)
                for (provider, outcome), value in sorted(provider_total.items())
            ],
        )
    )
    lines.extend(
        _counter_block(
            "eden_provider_tokens_total",
            "Tokens reported by text providers.",
            [(f'provider="{_escape_label(provider)}"', value) for provider, value in sorted(tokens_total.items())],
        )
    )
    lines.extend(
        _counter_block(
            "eden_content_generated_total",
            "Content items persisted by category.",
            [(f'category="{_escape_label(category)}"', value) for category, value in sorted(content_total.items())],
        )
    )
    lines.extend(
        _counter_block(
            "eden_images_generated_total",
            "Image records persisted by provider.",
            [(f'provider="{_escape_label(provider)}"', value) for provider, value in sorted(images_total.items())],
        )
    )

    lines.append("")
    return "\n".join(lines)


def reset_metrics_for_tests() -> None:
    global _started_at
    with _lock:
        _http_requests_total.clear()
        _http_request_duration_sum.clear()
        _http_request_duration_count.clear()
        _jobs_finished_total.clear()
        _provider_calls_total.clear()
        _provider_tokens_total.clear()
        _content_generated_total.clear()
        _images_generated_total.clear()
    _started_at = time.time()
