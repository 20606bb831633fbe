"""Probe that runs a local command and parses its stdout."""

import asyncio
import logging
import shlex
from collections.abc import Sequence

from uma.hub.errors import ProbeError
from uma.hub.payloads import to_snapshot
from uma.hub.probe import Probe
from uma.probes.parsers import Parser, parse_text

logger = logging.getLogger(__name__)


class CommandProbe(Probe):
    """Runs an executable per fetch (``docker inspect``, ``apcaccess``, ...).

    The child process is killed if the fetch is cancelled, so a hung command
    never outlives its deadline.
    """

    def __init__(self, key: str, argv: Sequence[str] | str, parser: Parser = parse_text, kind: str = "generic"):
        """Initialize command probe.

        Args:
            key: Resource key, used in error messages
            argv: Command and arguments (a string is split shell-style)
            parser: Turns stdout into a payload
            kind: Resource kind of the produced snapshot
        """
        self.key = key
        self.argv = shlex.split(argv) if isinstance(argv, str) else list(argv)
        if not self.argv:
            raise ValueError("CommandProbe needs a command")
        self.parser = parser
        self.kind = kind

    async def fetch(self):
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProbeError(self.key, f"cannot run {self.argv[0]}: {e}") from e

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[:200]
            raise ProbeError(self.key, f"{self.argv[0]} exited with {proc.returncode}: {detail}")

        try:
            data = self.parser(stdout.decode(errors="replace"))
        except ValueError as e:
            raise ProbeError(self.key, f"unparseable output from {self.argv[0]}: {e}") from e
        return to_snapshot(data, self.kind)

    def describe(self) -> str:
        return f"command:{self.argv[0]}"
