from prometheus_client import Counter, Gauge

ORDER_STATUS_UPDATES = Counter(
    "order_status_updates_total",
    "Total order status changes written to history",
    ["status"]
)

ORDER_ASSIGNMENTS = Counter(
    "order_assignments_total",
    "Total driver assignments created",
    ["mode"]
)

EVENTS_PUBLISHED = Counter(
    "order_events_published_total",
    "Total events handed to the event bus",
    ["event_type"]
)

EVENT_PUBLISH_FAILURES = Counter(
    "order_event_publish_failures_total",
    "Events that could not be delivered to one of their targets",
    ["event_type"]
)

EXTERNAL_SYSTEM_FAILURES = Counter(
    "external_system_failures_total",
    "Failed calls to CMS / WMS / ROS",
    ["system"]
)

AVAILABLE_DRIVERS = Gauge(
    "available_drivers",
    "Active drivers currently available for assignment"
)
