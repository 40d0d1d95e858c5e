"""Prometheus counters shared by the API and background jobs."""

from __future__ import annotations

from prometheus_client import REGISTRY, Counter


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


pharmacy_requests_total = _get_or_create_metric(
    Counter,
    "rxportal_pharmacy_requests_total",
    "Outbound pharmacy API calls",
    ["endpoint", "outcome"],
)

status_updates_total = _get_or_create_metric(
    Counter,
    "rxportal_status_updates_total",
    "Prescription statuses advanced by pharmacy polling",
    ["status"],
)

refill_actions_total = _get_or_create_metric(
    Counter,
    "rxportal_refill_actions_total",
    "Refill skip / cancel / engine actions",
    ["action", "outcome"],
)

tag_mutations_total = _get_or_create_metric(
    Counter,
    "rxportal_tag_mutations_total",
    "Admin tag create / update / delete operations",
    ["action", "outcome"],
)
