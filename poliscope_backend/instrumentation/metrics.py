"""Prometheus metrics for the debate pipeline."""

from prometheus_client import Counter, Gauge, Histogram

statements_ingested = Counter(
    "poliscope_statements_ingested_total",
    "Ingest outcomes by status and reason",
    ["status", "reason"],
)

oracle_attempts = Counter(
    "poliscope_oracle_attempts_total",
    "Scoring oracle call attempts by outcome",
    ["outcome"],
)

oracle_latency = Histogram(
    "poliscope_oracle_latency_seconds",
    "Latency of individual scoring oracle attempts",
)

oracle_collapsed = Counter(
    "poliscope_oracle_collapsed_requests_total",
    "Score requests that joined an in-flight oracle call",
)

debates_created = Counter(
    "poliscope_debates_created_total",
    "Debates created by the clustering engine",
    ["reason"],
)

debates_merged = Counter(
    "poliscope_debates_merged_total",
    "Debate merges applied",
)

clustering_degraded = Counter(
    "poliscope_clustering_degraded_total",
    "Assignments that fell back to a new debate because similarity was unavailable",
)

fanout_resyncs = Counter(
    "poliscope_fanout_resyncs_total",
    "Resync events issued to slow subscribers",
)

active_subscribers = Gauge(
    "poliscope_active_subscribers",
    "Currently connected delta subscribers",
)

pending_statements = Gauge(
    "poliscope_pending_statements",
    "Statements parked in the scoring retry queue",
)
