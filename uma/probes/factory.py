"""Build probes from probe-file entries.

A probe file is a JSON list of objects::

    [
      {"key": "ups.status", "type": "command", "command": "apcaccess",
       "parser": "keyvalue", "interval": 10, "timeout": 5},
      {"key": "docker.container.abc", "type": "http", "kind": "container",
       "url": "http://127.0.0.1:2375/containers/abc/json"}
    ]

Scheduling fields (interval, timeout, soft_ttl, hard_ttl, topic) are passed
to TelemetryHub.register_probe unchanged.
"""

import json
from pathlib import Path
from typing import Any

from uma.hub.probe import Probe
from uma.probes.command import CommandProbe
from uma.probes.http import HTTPProbe
from uma.probes.parsers import get_parser

REGISTRATION_FIELDS = ("interval", "timeout", "soft_ttl", "hard_ttl", "topic")


def build_probe(entry: dict[str, Any]) -> Probe:
    """Create the probe described by one probe-file entry.

    Raises:
        ValueError: Missing key or unknown probe type/parser
    """
    key = entry.get("key")
    if not key:
        raise ValueError(f"Probe entry has no key: {entry}")
    probe_type = entry.get("type", "command")
    kind = entry.get("kind", "generic")

    if probe_type == "command":
        if "command" not in entry:
            raise ValueError(f"Command probe {key} has no command")
        return CommandProbe(key, entry["command"], parser=get_parser(entry.get("parser", "text")), kind=kind)

    if probe_type == "http":
        if "url" not in entry:
            raise ValueError(f"HTTP probe {key} has no url")
        return HTTPProbe(
            key,
            entry["url"],
            kind=kind,
            headers=entry.get("headers"),
            field=entry.get("field"),
            timeout=float(entry.get("timeout", 10.0)),
        )

    raise ValueError(f"Unknown probe type '{probe_type}' for {key}")


def load_probe_file(path: str | Path) -> list[tuple[str, Probe, dict[str, Any]]]:
    """Read a probe file.

    Returns:
        (key, probe, registration kwargs) per entry
    """
    entries = json.loads(Path(path).read_text())
    if not isinstance(entries, list):
        raise ValueError(f"{path}: expected a JSON list of probe entries")
    probes = []
    for entry in entries:
        options = {name: entry[name] for name in REGISTRATION_FIELDS if name in entry}
        probes.append((entry["key"], build_probe(entry), options))
    return probes
