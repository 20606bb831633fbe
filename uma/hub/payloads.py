"""Per-domain snapshot payloads and the transport envelope.

Each subsystem gets its own immutable snapshot model, discriminated by the
``kind`` field. The cache and event hub treat payloads as opaque objects;
only the change detector (via fingerprint()) and the transport layer (via
Envelope) look inside.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from uma.hub.constants import VOLATILE_FIELDS


class Snapshot(BaseModel):
    """Base for all domain snapshots."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Fields that change on every fetch and must not trigger change events
    VOLATILE: ClassVar[frozenset[str]] = frozenset({"collected_at"})

    collected_at: datetime | None = None

    def semantic_fields(self) -> dict[str, Any]:
        """Model fields that carry meaning for change detection."""
        return self.model_dump(mode="json", exclude=set(self.VOLATILE))

    def fingerprint(self) -> str:
        """Stable hash over the semantic fields."""
        raw = json.dumps(self.semantic_fields(), sort_keys=True, default=str)
        return hashlib.sha256(raw.encode()).hexdigest()


class ContainerSnapshot(Snapshot):
    """Docker container state."""

    VOLATILE: ClassVar[frozenset[str]] = frozenset({"collected_at", "status", "cpu_percent", "memory_bytes"})

    kind: Literal["container"] = "container"
    id: str
    name: str = ""
    image: str = ""
    state: str
    status: str = ""  # human text such as "Up 5 minutes"
    health: str | None = None
    cpu_percent: float | None = None
    memory_bytes: int | None = None


class VMSnapshot(Snapshot):
    """Libvirt domain state."""

    VOLATILE: ClassVar[frozenset[str]] = frozenset({"collected_at", "cpu_time_ns"})

    kind: Literal["vm"] = "vm"
    name: str
    state: str
    vcpus: int = 0
    memory_bytes: int = 0
    autostart: bool = False
    cpu_time_ns: int | None = None


class DiskSnapshot(Snapshot):
    """Array or pool member disk, including SMART health."""

    VOLATILE: ClassVar[frozenset[str]] = frozenset({"collected_at", "temperature_c", "used_bytes", "reads", "writes"})

    kind: Literal["disk"] = "disk"
    name: str
    device: str = ""
    state: str = "unknown"
    smart_status: str = "unknown"
    size_bytes: int = 0
    used_bytes: int | None = None
    temperature_c: float | None = None
    reads: int | None = None
    writes: int | None = None


class ArraySnapshot(Snapshot):
    """Storage array state."""

    VOLATILE: ClassVar[frozenset[str]] = frozenset({"collected_at", "sync_progress"})

    kind: Literal["array"] = "array"
    state: str
    parity_valid: bool | None = None
    num_disks: int = 0
    sync_action: str | None = None
    sync_progress: float | None = None


class SensorSnapshot(Snapshot):
    """Hardware sensor chip readings.

    Raw readings fluctuate constantly; only the chip's alarm set and fan
    count are semantic.
    """

    VOLATILE: ClassVar[frozenset[str]] = frozenset({"collected_at", "readings"})

    kind: Literal["sensor"] = "sensor"
    chip: str
    readings: dict[str, float] = Field(default_factory=dict)
    alarms: list[str] = Field(default_factory=list)
    fan_count: int = 0


class UPSSnapshot(Snapshot):
    """Uninterruptible power supply state."""

    VOLATILE: ClassVar[frozenset[str]] = frozenset({"collected_at", "battery_charge", "runtime_seconds", "load_percent"})

    kind: Literal["ups"] = "ups"
    status: str
    model: str = ""
    on_battery: bool = False
    battery_charge: float | None = None
    runtime_seconds: int | None = None
    load_percent: float | None = None


class GenericSnapshot(Snapshot):
    """Free-form payload for subsystems without a dedicated model."""

    kind: Literal["generic"] = "generic"
    data: dict[str, Any] = Field(default_factory=dict)

    def semantic_fields(self) -> dict[str, Any]:
        fields = super().semantic_fields()
        fields["data"] = {k: v for k, v in self.data.items() if k not in VOLATILE_FIELDS}
        return fields


Payload = Annotated[
    Union[
        ContainerSnapshot,
        VMSnapshot,
        DiskSnapshot,
        ArraySnapshot,
        SensorSnapshot,
        UPSSnapshot,
        GenericSnapshot,
    ],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter = TypeAdapter(Payload)


def parse_payload(data: dict[str, Any]) -> Snapshot:
    """Validate a dict carrying a ``kind`` tag into its snapshot model."""
    return _payload_adapter.validate_python(data)


SNAPSHOT_KINDS = {"container", "vm", "disk", "array", "sensor", "ups"}


def to_snapshot(data: Any, kind: str) -> Snapshot:
    """Coerce a probe result into the snapshot model for kind.

    Mappings for a kind with a dedicated model are validated into it;
    anything else is wrapped in a GenericSnapshot.

    Raises:
        pydantic.ValidationError: data does not fit the kind's model
    """
    if isinstance(data, Snapshot):
        return data
    if kind in SNAPSHOT_KINDS and isinstance(data, dict):
        return parse_payload({**data, "kind": kind})
    if isinstance(data, dict):
        return GenericSnapshot(data=data)
    return GenericSnapshot(data={"value": data})


def kind_of(payload: Any) -> str:
    """Resource kind of an arbitrary payload."""
    return getattr(payload, "kind", None) or "generic"


def fingerprint(payload: Any) -> str:
    """Fingerprint any payload, ignoring volatile fields.

    Snapshot models use their own semantic field set. Plain dicts drop the
    shared VOLATILE_FIELDS at the top level.
    """
    if isinstance(payload, Snapshot):
        return payload.fingerprint()
    if isinstance(payload, dict):
        payload = {k: v for k, v in payload.items() if k not in VOLATILE_FIELDS}
    raw = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode()).hexdigest()


def to_wire(payload: Any) -> Any:
    """JSON-ready form of a payload."""
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    return payload


class Envelope(BaseModel):
    """Generic ``{key, kind, data}`` wrapper handed to transports."""

    key: str
    kind: str
    data: Any = None

    @classmethod
    def wrap(cls, key: str, payload: Any) -> "Envelope":
        return cls(key=key, kind=kind_of(payload), data=to_wire(payload))

    def unwrap(self) -> Any:
        """Rebuild the typed snapshot; untagged data comes back as-is."""
        if isinstance(self.data, dict) and self.data.get("kind") == self.kind:
            return parse_payload(self.data)
        return self.data
