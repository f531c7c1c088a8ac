"""
Per-run metrics recorder.

Counters live in a registry owned by the recorder instead of the global
prometheus_client registry, so each run (and each test) gets its own values.
When a pushgateway is configured the registry is pushed once the run ends.
"""

from __future__ import annotations

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, push_to_gateway

logger = logging.getLogger(__name__)

_NAMESPACE = "cad"
_SUBSYSTEM = "investigate"
_JOB = "cad"


class MetricsRecorder:
    def __init__(self, pushgateway: str = "", registry: Optional[CollectorRegistry] = None) -> None:
        self.pushgateway = pushgateway
        self.registry = registry or CollectorRegistry()
        self.alerts = Counter(
            "alerts",
            "the number of alerts processed",
            ["alert_type"],
            namespace=_NAMESPACE,
            subsystem=_SUBSYSTEM,
            registry=self.registry,
        )
        self.restrictions_set = Counter(
            "limitedsupport_set",
            "the number of limited support reasons posted",
            ["alert_type", "ls_summary"],
            namespace=_NAMESPACE,
            subsystem=_SUBSYSTEM,
            registry=self.registry,
        )
        self.restrictions_removed = Counter(
            "limitedsupport_removed",
            "the number of limited support reasons removed",
            ["alert_type"],
            namespace=_NAMESPACE,
            subsystem=_SUBSYSTEM,
            registry=self.registry,
        )
        self.advisories_prepared = Counter(
            "servicelog_prepared",
            "the number of service logs prepared by an investigation",
            ["alert_type"],
            namespace=_NAMESPACE,
            subsystem=_SUBSYSTEM,
            registry=self.registry,
        )
        self.advisories_sent = Counter(
            "servicelog_sent",
            "the number of service logs sent",
            ["alert_type"],
            namespace=_NAMESPACE,
            subsystem=_SUBSYSTEM,
            registry=self.registry,
        )

    def alert_received(self, alert_type: str) -> None:
        self.alerts.labels(alert_type=alert_type).inc()

    def restriction_set(self, alert_type: str, summary: str) -> None:
        self.restrictions_set.labels(alert_type=alert_type, ls_summary=summary).inc()

    def restriction_removed(self, alert_type: str) -> None:
        self.restrictions_removed.labels(alert_type=alert_type).inc()

    def advisory_prepared(self, alert_type: str) -> None:
        self.advisories_prepared.labels(alert_type=alert_type).inc()

    def advisory_sent(self, alert_type: str) -> None:
        self.advisories_sent.labels(alert_type=alert_type).inc()

    def value(self, name: str, **labels: str) -> float:
        """Read a sample back (e.g. `value("cad_investigate_alerts_total", alert_type="CHGM")`)."""
        sample = self.registry.get_sample_value(name, labels)
        return sample or 0.0

    def push(self) -> None:
        if not self.pushgateway:
            return
        try:
            push_to_gateway(self.pushgateway, job=_JOB, registry=self.registry)
        except Exception as e:
            # Metrics delivery never fails a run.
            logger.warning("Failed to push metrics to %s: %s", self.pushgateway, e)
