"""
Prometheus metrics: stage transitions (API), event fan-out (worker), overdue orders and queue depth.
"""
from prometheus_client import Counter, Gauge, generate_latest

# Core: transition outcomes
transitions_accepted_total = Counter(
    "order_transitions_accepted_total",
    "Total committed stage transitions",
    ["from_stage", "to_stage"],
)
transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total transition requests rejected by the rule engine",
    ["code"],
)
events_published_total = Counter(
    "order_events_published_total",
    "Total order change events handed to the notification channel",
    ["event_type"],
)
notifications_failed_total = Counter(
    "order_notifications_failed_total",
    "Total order change events the notification channel failed to accept",
)
orders_overdue = Gauge(
    "orders_overdue",
    "Orders past their current-stage deadline at the last overdue summary",
)

# Worker: fan-out outcomes
messages_processed_total = Counter(
    "messages_processed_total",
    "Total event messages fanned out to subscribers",
)
messages_failed_total = Counter(
    "messages_failed_total",
    "Total event messages that failed fan-out (retried or sent to DLQ)",
)
messages_dlq_total = Counter(
    "messages_dlq_total",
    "Total event messages moved to DLQ after max retries",
)

# SQS queue depth (when using SQS)
sqs_queue_messages_waiting = Gauge(
    "sqs_queue_messages_waiting",
    "Approximate number of messages waiting in SQS (main queue)",
)
sqs_queue_messages_in_flight = Gauge(
    "sqs_queue_messages_in_flight",
    "Approximate number of messages in flight (received but not yet deleted)",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
