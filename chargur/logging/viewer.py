"""
Log Viewer Utilities for Chargur.

Query, filter, summarize and format JSONL log entries.
Used by the `chargur logs` CLI command.
"""

import json
import re
from collections.abc import Iterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from .config import get_config

LOG_TYPES = ("stream", "store", "session")


def parse_since(since: str) -> datetime:
    """
    Parse a 'since' time string into a datetime.

    Supports:
        - ISO format: "2026-01-11T10:00:00"
        - Relative: "1h", "30m", "2d", "1w"
    """
    try:
        return datetime.fromisoformat(since)
    except ValueError:
        pass

    match = re.match(r"^(\d+)([mhdw])$", since.lower())
    if match:
        value = int(match.group(1))
        delta_map = {
            "m": timedelta(minutes=value),
            "h": timedelta(hours=value),
            "d": timedelta(days=value),
            "w": timedelta(weeks=value),
        }
        return datetime.now() - delta_map[match.group(2)]

    raise ValueError(f"Invalid time format: {since}. Use ISO format or relative (1h, 30m, 2d)")


def read_jsonl(filepath: Path, since: datetime | None = None) -> Iterator[dict[str, Any]]:
    """
    Read entries from a JSONL file, skipping blank and corrupt lines.

    Args:
        filepath: Path to JSONL file
        since: Only return entries at or after this time
    """
    if not filepath.exists():
        return

    with open(filepath, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue

            if since:
                try:
                    if datetime.fromisoformat(entry.get("timestamp", "")) < since:
                        continue
                except (ValueError, TypeError):
                    continue

            yield entry


def _log_files(log_type: str) -> list[tuple[str, Path]]:
    config = get_config()
    paths = {
        "stream": config.stream_log_path,
        "store": config.store_log_path,
        "session": config.session_log_path,
    }
    if log_type == "all":
        return list(paths.items())
    if log_type not in paths:
        raise ValueError(f"Unknown log type: {log_type}. Use one of {', '.join(LOG_TYPES)} or all")
    return [(log_type, paths[log_type])]


def query_logs(
    log_type: str = "all",
    since: str | None = None,
    conversation_id: str | None = None,
    outcome: str | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """
    Query log entries with filters, newest first.

    Args:
        log_type: "stream", "store", "session", or "all"
        since: Time filter (ISO or relative like "1h")
        conversation_id: Only entries for this conversation
        outcome: Filter stream entries by outcome ("success", "retry", ...)
        limit: Max entries to return
    """
    since_dt = parse_since(since) if since else None
    results: list[dict[str, Any]] = []

    for source, filepath in _log_files(log_type):
        for entry in read_jsonl(filepath, since=since_dt):
            entry["_source"] = source
            if conversation_id and entry.get("conversation_id") != conversation_id:
                continue
            if outcome and entry.get("outcome") != outcome:
                continue
            results.append(entry)

    results.sort(key=lambda x: x.get("timestamp", ""), reverse=True)
    return results[:limit]


def percentile(values: list[float], p: float) -> float:
    """Calculate percentile of a list by linear interpolation."""
    if not values:
        return 0.0
    sorted_vals = sorted(values)
    k = (len(sorted_vals) - 1) * p / 100
    f = int(k)
    c = f + 1 if f + 1 < len(sorted_vals) else f
    return sorted_vals[f] + (k - f) * (sorted_vals[c] - sorted_vals[f])


def calculate_stats(entries: list[dict[str, Any]]) -> dict[str, Any]:
    """Summarize attempts, outcomes, latencies and store errors."""
    stream_entries = [e for e in entries if e.get("_source") == "stream"]
    store_entries = [e for e in entries if e.get("_source") == "store"]

    outcomes: dict[str, int] = {}
    for e in stream_entries:
        key = e.get("outcome") or "unknown"
        outcomes[key] = outcomes.get(key, 0) + 1

    latencies = [e.get("latency_ms", 0) for e in stream_entries if e.get("latency_ms")]
    first_bytes = [e.get("first_byte_ms", 0) for e in stream_entries if e.get("first_byte_ms")]
    requests = {e.get("request_id") for e in stream_entries if e.get("request_id")}
    retried = sum(1 for e in stream_entries if e.get("attempt", 1) > 1)

    store_failures = [e for e in store_entries if e.get("error")]

    errors: list[str] = []
    for e in stream_entries + store_entries:
        if err := e.get("error"):
            errors.append(str(err)[:100])

    return {
        "attempts": len(stream_entries),
        "requests": len(requests),
        "retried_attempts": retried,
        "outcomes": outcomes,
        "malformed_frames": sum(e.get("malformed_frames", 0) for e in stream_entries),
        "avg_latency_ms": int(sum(latencies) / len(latencies)) if latencies else 0,
        "p50_latency_ms": int(percentile(latencies, 50)),
        "p95_latency_ms": int(percentile(latencies, 95)),
        "p50_first_byte_ms": int(percentile(first_bytes, 50)),
        "store_calls": len(store_entries),
        "store_failures": len(store_failures),
        "errors": errors[:10],
    }


def format_entry_line(entry: dict[str, Any]) -> str:
    """Format a log entry as a single display line."""
    source = entry.get("_source", "?")
    ts = entry.get("timestamp", "")[:19]

    if source == "stream":
        conv = (entry.get("conversation_id") or "-")[:8]
        attempt = entry.get("attempt", 1)
        outcome = entry.get("outcome", "?")
        latency = entry.get("latency_ms", 0)
        return f"[{ts}] STREAM {conv:8s} #{attempt}  {outcome:10s} {latency:6d}ms  {entry.get('stage_id', '')}"

    if source == "store":
        op = entry.get("operation", "?")
        status = entry.get("status") or "-"
        latency = entry.get("latency_ms", 0)
        return f"[{ts}] STORE  {op:28s} {status!s:>4}  {latency:5d}ms"

    if source == "session":
        event = entry.get("event_type", "?")
        stage = entry.get("stage_id", "")
        request = entry.get("user_request", "")[:40]
        if event == "request" and request:
            return f"[{ts}] SESSION {event:10s} {stage}: {request}..."
        return f"[{ts}] SESSION {event:10s} {stage}"

    return f"[{ts}] {source.upper()} {json.dumps(entry)[:60]}..."


def format_stats(stats: dict[str, Any]) -> str:
    """Format statistics for display."""
    lines = [
        "=== Stream Statistics ===",
        f"  Requests:       {stats['requests']}",
        f"  Attempts:       {stats['attempts']} ({stats['retried_attempts']} retries)",
        f"  Latency:        avg {stats['avg_latency_ms']}ms, p50 {stats['p50_latency_ms']}ms, "
        f"p95 {stats['p95_latency_ms']}ms",
        f"  First byte:     p50 {stats['p50_first_byte_ms']}ms",
        f"  Malformed:      {stats['malformed_frames']} frames dropped",
    ]

    if stats.get("outcomes"):
        lines.append("  Outcomes:")
        for outcome, count in sorted(stats["outcomes"].items()):
            lines.append(f"    - {outcome}: {count}")

    lines.extend(
        [
            "",
            "=== Store Statistics ===",
            f"  Calls:          {stats['store_calls']}",
            f"  Failures:       {stats['store_failures']}",
        ]
    )

    if stats.get("errors"):
        lines.extend(["", "=== Recent Errors ==="])
        for err in stats["errors"][:5]:
            lines.append(f"  - {err[:80]}")

    return "\n".join(lines)
