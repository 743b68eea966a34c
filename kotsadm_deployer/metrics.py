"""Prometheus metrics for the deployer."""

from prometheus_client import Counter, Gauge

deploy_instructions_total = Counter(
    "kotsadm_deploy_instructions_total",
    "Deploy instructions emitted to agents",
    ["kind"],
)

deploy_failures_total = Counter(
    "kotsadm_deploy_failures_total",
    "Deploy attempts recorded as failed",
)

support_bundle_requests_total = Counter(
    "kotsadm_support_bundle_requests_total",
    "Support bundle collection requests emitted to agents",
)

restore_transitions_total = Counter(
    "kotsadm_restore_transitions_total",
    "Restore cycle transitions",
    ["transition"],
)

deploy_results_total = Counter(
    "kotsadm_deploy_results_total",
    "Deploy results reported by agents",
    ["outcome"],
)

connected_agents = Gauge(
    "kotsadm_connected_agents",
    "Agent connections currently registered",
)
