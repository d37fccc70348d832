"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

REQUEST_COUNTER = Counter(
	"readguard_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"readguard_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

ABUSE_USER_CHECKS = Counter(
	"readguard_abuse_user_checks_total",
	"Chapter read activity checks by outcome",
	["outcome"],
)

ABUSE_IP_CHECKS = Counter(
	"readguard_abuse_ip_checks_total",
	"IP activity checks by outcome",
	["outcome"],
)

ABUSE_HEURISTIC_HITS = Counter(
	"readguard_abuse_heuristic_hits_total",
	"Heuristic checks that fired",
	["subject", "check"],
)

ABUSE_IP_BLOCKS = Counter(
	"readguard_abuse_ip_blocks_total",
	"IP block transitions",
	["source"],
)

ABUSE_IP_UNBLOCKS = Counter(
	"readguard_abuse_ip_unblocks_total",
	"IP unblock transitions",
	["source"],
)

ABUSE_STORE_FAILURES = Counter(
	"readguard_abuse_store_failures_total",
	"Abuse store operations that failed or timed out (request failed open)",
	["op"],
)

ABUSE_STORE_LATENCY = Histogram(
	"readguard_abuse_store_duration_seconds",
	"Abuse store round-trip latency in seconds",
	["op"],
	buckets=(0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5),
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def inc_user_check(outcome: str) -> None:
	ABUSE_USER_CHECKS.labels(outcome=outcome).inc()


def inc_ip_check(outcome: str) -> None:
	ABUSE_IP_CHECKS.labels(outcome=outcome).inc()


def inc_heuristic_hit(subject: str, check: str) -> None:
	ABUSE_HEURISTIC_HITS.labels(subject=subject, check=check).inc()


def inc_ip_block(source: str) -> None:
	ABUSE_IP_BLOCKS.labels(source=source).inc()


def inc_ip_unblock(source: str) -> None:
	ABUSE_IP_UNBLOCKS.labels(source=source).inc()


def inc_store_failure(op: str) -> None:
	ABUSE_STORE_FAILURES.labels(op=op).inc()


def observe_store(op: str, elapsed_seconds: float) -> None:
	ABUSE_STORE_LATENCY.labels(op=op).observe(elapsed_seconds)
