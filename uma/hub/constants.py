"""Shared constants for the telemetry hub.

Resource namespaces and event topics are defined here so that probes,
the change detector and transport code agree on the same names.
"""

# Resource key namespaces (text before the first dot of a ResourceKey)
NS_DOCKER = "docker"
NS_VM = "vm"
NS_STORAGE = "storage"
NS_SENSORS = "sensors"
NS_UPS = "ups"
NS_SYSTEM = "system"

# Event topics
TOPIC_DOCKER_EVENTS = "docker.events"
TOPIC_VM_EVENTS = "vm.events"
TOPIC_STORAGE_STATUS = "storage.status"
TOPIC_TEMPERATURE_EVENTS = "temperature.events"
TOPIC_UPS_STATUS = "ups.status"
TOPIC_SYSTEM_STATS = "system.stats"

# Default topic for each namespace; unknown namespaces publish on "<ns>.events"
DEFAULT_TOPICS = {
    NS_DOCKER: TOPIC_DOCKER_EVENTS,
    NS_VM: TOPIC_VM_EVENTS,
    NS_STORAGE: TOPIC_STORAGE_STATUS,
    NS_SENSORS: TOPIC_TEMPERATURE_EVENTS,
    NS_UPS: TOPIC_UPS_STATUS,
    NS_SYSTEM: TOPIC_SYSTEM_STATS,
}

# Payload fields that change on every fetch and never make a change event
VOLATILE_FIELDS = frozenset(
    {
        "timestamp",
        "collected_at",
        "last_updated",
        "uptime",
        "uptime_seconds",
    }
)

# Slow-dispatch warning threshold, matches the hub publish threshold
SLOW_DISPATCH_MS = 100


def namespace_of(key: str) -> str:
    """Return the namespace part of a resource key."""
    return key.split(".", 1)[0]


def default_topic(key: str) -> str:
    """Return the topic a key publishes on when none was pinned."""
    ns = namespace_of(key)
    return DEFAULT_TOPICS.get(ns, f"{ns}.events")
