"""Output parsers shared by the reference probes.

A parser turns raw probe output into a payload. When the probe declares a
kind with a dedicated snapshot model, uma.hub.payloads.to_snapshot validates
the parsed mapping into that model; otherwise it wraps it in a GenericSnapshot.
"""

import json
from collections.abc import Callable
from typing import Any

Parser = Callable[[str], Any]


def parse_json(text: str) -> Any:
    return json.loads(text)


def parse_text(text: str) -> dict[str, Any]:
    return {"output": text.strip()}


def parse_keyvalue(text: str) -> dict[str, str]:
    """Parse ``KEY : value`` lines (apcaccess, upsc, mdcmd style).

    Splits on the first colon or equals sign; lines without one are skipped.
    """
    result = {}
    for line in text.splitlines():
        sep = min((i for i in (line.find(":"), line.find("=")) if i > 0), default=-1)
        if sep < 0:
            continue
        key = line[:sep].strip()
        if key:
            result[key] = line[sep + 1 :].strip()
    return result


PARSERS: dict[str, Parser] = {
    "json": parse_json,
    "text": parse_text,
    "keyvalue": parse_keyvalue,
}


def get_parser(name: str) -> Parser:
    try:
        return PARSERS[name]
    except KeyError:
        raise ValueError(f"Unknown parser '{name}', expected one of {sorted(PARSERS)}") from None

