# gaussian_mixture/container.py
"""Named message container.

A container is a zip archive whose entries are JSON-encoded messages; the entry
name is the topic. Zip archives may hold several entries with the same name,
so readers get every entry matching a topic and decide what to do with
duplicates.
"""

from __future__ import annotations

import json
import zipfile
from typing import Any, Dict, List


def write_message(path: str, topic: str, payload: Dict[str, Any]) -> None:
    """Create (or replace) the container at path holding one entry for topic."""
    with zipfile.ZipFile(path, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(topic, json.dumps(payload))


def read_messages(path: str, topic: str) -> List[Dict[str, Any]]:
    """All decoded entries stored under topic, in archive order."""
    out: List[Dict[str, Any]] = []
    with zipfile.ZipFile(path, mode="r") as zf:
        for info in zf.infolist():
            if info.filename != topic:
                continue
            with zf.open(info) as f:
                out.append(json.loads(f.read().decode("utf-8")))
    return out
