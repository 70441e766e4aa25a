"""Prometheus metrics for WhatsApp connection and relay monitoring."""

from prometheus_client import Counter, Gauge, Histogram

# Connection status
whatsapp_connection_status = Gauge(
    "whatsapp_connection_status",
    "WhatsApp connection status (1=connected, 0=disconnected)",
)

whatsapp_reconnects_scheduled_total = Counter(
    "whatsapp_reconnects_scheduled_total",
    "Total automatic WhatsApp reconnects scheduled after a close",
)

whatsapp_session_closes_total = Counter(
    "whatsapp_session_closes_total",
    "Total WhatsApp session closes by disposition",
    ["disposition"],  # reconnect, logged_out
)

whatsapp_pairing_codes_total = Counter(
    "whatsapp_pairing_codes_total",
    "Total pairing codes issued",
)

# Liveness
whatsapp_liveness_failures_total = Counter(
    "whatsapp_liveness_failures_total",
    "Total liveness checks that found the transport not open",
)

whatsapp_forced_reconnects_total = Counter(
    "whatsapp_forced_reconnects_total",
    "Total reconnects forced by the liveness monitor",
)

# Relay
whatsapp_messages_total = Counter(
    "whatsapp_messages_total",
    "Total WhatsApp messages by direction",
    ["direction"],  # inbound, outbound
)

whatsapp_send_retries_total = Counter(
    "whatsapp_send_retries_total",
    "Total WhatsApp send retry attempts",
)

whatsapp_send_failures_total = Counter(
    "whatsapp_send_failures_total",
    "Total WhatsApp sends that failed after exhausting retries",
    ["kind"],  # ack, reply, apology
)

whatsapp_handler_duration_seconds = Histogram(
    "whatsapp_handler_duration_seconds",
    "Duration of message handler invocations in seconds",
    ["result"],  # success, failure
    buckets=(0.5, 1, 2.5, 5, 10, 20, 30, 60, 120),
)

# Session persistence
whatsapp_session_persist_total = Counter(
    "whatsapp_session_persist_total",
    "Total credential persistence operations",
    ["target", "result"],  # target: local, remote; result: success, failure
)
