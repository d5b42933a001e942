from typing import Dict, Any


def _sanitize_label_value(value: str) -> str:
	"""Escape characters inside Prometheus label values."""
	return (
		value.replace("\\", "\\\\")
		.replace("\n", "\\n")
		.replace('"', '\\"')
	)


def format_prometheus_metrics(snapshot: Dict[str, Any]) -> str:
	"""Convert internal metrics snapshot into Prometheus exposition format."""
	lines: list[str] = []

	total_requests = snapshot.get("total_requests", 0) or 0
	total_errors = snapshot.get("total_errors", 0) or 0
	total_success = snapshot.get("total_success", 0) or 0
	avg_latency = snapshot.get("average_latency_ms", 0.0) or 0.0
	by_path = snapshot.get("by_path", {}) or {}
	by_status = snapshot.get("by_status_code", {}) or {}
	lookups = snapshot.get("lookups", {}) or {}
	last_ts = snapshot.get("last_request_timestamp", 0) or 0

	lines.append("# HELP apiserver_requests_total Total number of HTTP requests handled.")
	lines.append("# TYPE apiserver_requests_total counter")
	lines.append(f"apiserver_requests_total {total_requests}")

	lines.append("# HELP apiserver_requests_error_total Total number of error HTTP responses.")
	lines.append("# TYPE apiserver_requests_error_total counter")
	lines.append(f"apiserver_requests_error_total {total_errors}")

	lines.append("# HELP apiserver_requests_success_total Total number of successful HTTP responses.")
	lines.append("# TYPE apiserver_requests_success_total counter")
	lines.append(f"apiserver_requests_success_total {total_success}")

	lines.append("# HELP apiserver_request_latency_ms_average Average request latency in milliseconds.")
	lines.append("# TYPE apiserver_request_latency_ms_average gauge")
	lines.append(f"apiserver_request_latency_ms_average {avg_latency}")

	lines.append("# HELP apiserver_last_request_timestamp_seconds Unix timestamp of the last handled request.")
	lines.append("# TYPE apiserver_last_request_timestamp_seconds gauge")
	lines.append(f"apiserver_last_request_timestamp_seconds {int(last_ts)}")

	lines.append("# HELP apiserver_requests_by_path_total Total requests grouped by HTTP path.")
	lines.append("# TYPE apiserver_requests_by_path_total counter")
	for path, count in by_path.items():
		if path is None:
			continue
		label = _sanitize_label_value(str(path))
		lines.append(f'apiserver_requests_by_path_total{{path="{label}"}} {count}')

	lines.append("# HELP apiserver_requests_by_status_total Total requests grouped by HTTP status code.")
	lines.append("# TYPE apiserver_requests_by_status_total counter")
	for status, count in by_status.items():
		label = _sanitize_label_value(str(status))
		lines.append(f'apiserver_requests_by_status_total{{status="{label}"}} {count}')

	lines.append("# HELP apiserver_lookups_total Lookup outcomes grouped by handler.")
	lines.append("# TYPE apiserver_lookups_total counter")
	for (handler, outcome), count in sorted(lookups.items()):
		lines.append(
			f'apiserver_lookups_total{{handler="{_sanitize_label_value(handler)}",'
			f'outcome="{_sanitize_label_value(outcome)}"}} {count}'
		)

	# Newline at the end is recommended by Prometheus
	return "\n".join(lines) + "\n"
