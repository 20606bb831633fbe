"""Reference probes and the probe-file loader."""

from uma.probes.command import CommandProbe
from uma.probes.factory import build_probe, load_probe_file
from uma.probes.http import HTTPProbe

__all__ = ["CommandProbe", "HTTPProbe", "build_probe", "load_probe_file"]
