"""Prometheus metrics for agentpod."""

from prometheus_client import Counter, Histogram

sandbox_provisions_total = Counter(
    "agentpod_sandbox_provisions_total",
    "Sandbox ensure/provision outcomes",
    ["outcome"],  # reused, started, created, timeout
)

provision_duration_seconds = Histogram(
    "agentpod_provision_duration_seconds",
    "Time from create to first healthy probe",
    buckets=[1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 45.0, 60.0, 90.0],
)

gateway_attempts_total = Counter(
    "agentpod_gateway_attempts_total",
    "Gateway request attempts",
    ["operation", "status"],
)

registry_reloads_total = Counter(
    "agentpod_registry_reloads_total",
    "Gateway reloads fired by the debouncer",
    ["status"],
)

reaper_agents_total = Counter(
    "agentpod_reaper_agents_total",
    "Agents handled by reaper sweeps",
    ["outcome"],  # paused, skipped, error
)

synthesis_jobs_total = Counter(
    "agentpod_synthesis_jobs_total",
    "Sentence synthesis jobs",
    ["status"],
)

voice_streams_total = Counter(
    "agentpod_voice_streams_total",
    "Voice pipeline runs by terminal state",
    ["state"],  # done, error, cancelled
)
