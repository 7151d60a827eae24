"""Event subscribers: structured logs, JSONL event file, Prometheus."""
