from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter


@dataclass(frozen=True)
class DashboardMetrics:
    """Prometheus metrics for the Kubernetes mutations made by the API.

    HTTP request metrics live next to the middleware in ``main``; these cover
    what the requests did to the cluster.
    """

    settings_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "dashboard_cluster_settings_updates_total",
            "Total cluster settings update requests by backing store mode and outcome",
            ["mode", "result"],
        )
    )
    rollouts_total: Counter = field(
        default_factory=lambda: Counter(
            "dashboard_rollouts_total",
            "Total workload rollouts requested after configuration changes",
            ["kind"],
        )
    )
    groups_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "dashboard_groups_errors_total",
            "Total failed group lookups and group configuration updates",
            ["operation"],
        )
    )


METRICS = DashboardMetrics()
