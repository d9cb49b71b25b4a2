"""Prometheus metrics for runs and node executions."""

from prometheus_client import Counter, Histogram

RUNS_TOTAL = Counter(
    "opsflow_runs_total", "Workflow runs reaching a status", ["status"]
)
NODE_EXECUTIONS = Counter(
    "opsflow_node_executions_total", "Node executions by outcome", ["node_type", "status"]
)
NODE_DURATION = Histogram(
    "opsflow_node_duration_seconds", "Node execution duration", ["node_type"]
)
NODE_RETRIES = Counter(
    "opsflow_node_retries_total", "Additional attempts spent on retriable failures", ["node_type"]
)
