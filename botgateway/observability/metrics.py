from __future__ import annotations
from prometheus_client import Counter, Histogram, Gauge

running_bots = Gauge("bgw_running_bots", "Bots with a live adapter instance", ["platform"])
lifecycle_transitions = Counter("bgw_lifecycle_transitions_total", "Bot lifecycle transitions", ["action", "outcome"])
inbound_messages = Counter("bgw_inbound_messages_total", "Normalized inbound messages", ["platform"])
webhook_verifications = Counter("bgw_webhook_verifications_total", "Webhook verification outcomes", ["platform", "outcome"])
webhook_dropped = Counter("bgw_webhook_dropped_total", "Webhook events acknowledged but not forwarded", ["platform", "reason"])
outbound_sends = Counter("bgw_outbound_sends_total", "Outbound send attempts", ["platform", "outcome"])
send_latency = Histogram("bgw_send_latency_seconds", "Adapter send latency seconds", ["platform"])
health_checks = Counter("bgw_health_checks_total", "Adapter health check results", ["platform", "status"])
pipeline_handoffs = Counter("bgw_pipeline_handoffs_total", "Pipeline hand-off outcomes", ["outcome"])
api_requests = Counter("bgw_api_requests_total", "Management API requests", ["route", "status"])
rate_limited_sends = Counter("bgw_rate_limited_sends_total", "Sends refused by the per-platform window limiter", ["platform"])
