# metrics.py
from prometheus_client import Counter

STATUS_TRANSITIONS = Counter(
    "status_transitions_total",
    "Committed order/parcel status transitions",
    ["entity", "status"]
)

REJECTED_COMMANDS = Counter(
    "rejected_commands_total",
    "Commands rejected with a structured error",
    ["error"]
)

LEDGER_OPERATIONS = Counter(
    "ledger_operations_total",
    "Driver/restaurant ledger and earnings operations applied",
    ["operation"]
)

NOTIFICATIONS_SENT = Counter(
    "notifications_sent_total",
    "Notifications handed to a transport",
    ["channel"]
)

NOTIFICATIONS_FAILED = Counter(
    "notifications_failed_total",
    "Notifications that failed and were dropped",
    ["channel"]
)
