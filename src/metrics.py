"""Prometheus metrics for the PDP monitor."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("pdp_monitor", "PDP monitor application info")
app_info.info({"version": "0.1.0", "name": "pdp-monitor"})

# Scan metrics
scans_total = Counter(
    "pdp_scans_total",
    "Total number of product page scans",
    ["depth", "status"],
)

scan_duration_seconds = Histogram(
    "pdp_scan_duration_seconds",
    "Wall time of a full product page scan",
    ["depth"],
    buckets=[1.0, 5.0, 10.0, 20.0, 30.0, 45.0, 60.0, 90.0],
)

page_load_seconds = Histogram(
    "pdp_page_load_seconds",
    "Time until network idle on navigation",
    buckets=[0.5, 1.0, 2.0, 3.0, 5.0, 8.0, 15.0],
)

navigation_retries_total = Counter(
    "pdp_navigation_retries_total",
    "Navigation attempts that were retried",
)

active_browser_sessions = Gauge(
    "pdp_active_browser_sessions",
    "Browser sessions currently open in this process",
)

# Detection metrics
detector_results_total = Counter(
    "pdp_detector_results_total",
    "Detector outcomes",
    ["check", "status"],
)

issue_transitions_total = Counter(
    "pdp_issue_transitions_total",
    "Issue state machine transitions",
    ["issue_type", "outcome"],
)

# AI metrics
ai_requests_total = Counter(
    "pdp_ai_requests_total",
    "AI confirmation requests",
    ["kind", "outcome"],
)

# Alert metrics
alerts_sent_total = Counter(
    "pdp_alerts_sent_total",
    "Alert deliveries",
    ["channel", "status"],
)

# Page lock metrics
page_lock_wait_seconds = Histogram(
    "pdp_page_lock_wait_seconds",
    "Time spent waiting for a per-page lock",
    buckets=[0.01, 0.1, 0.5, 1.0, 5.0, 30.0, 90.0],
)

pages_by_status = Gauge(
    "pdp_pages_by_status",
    "Monitored product pages by health status",
    ["status"],
)
