"""Field classification for Server-Sent Events lines.

Each decoded line is one of: a comment, a field, a dispatch boundary (blank
line) or an unknown field. Nothing here raises; unknown field names are
ignored for forward compatibility.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

# Field names the event stream grammar defines
KNOWN_FIELDS = frozenset({"id", "event", "data", "retry"})


@dataclass(frozen=True)
class Comment:
    """Line starting with ':' (often a keep-alive)."""
    text: str = ""


@dataclass(frozen=True)
class Field:
    name: str
    value: str = ""


@dataclass(frozen=True)
class DispatchBoundary:
    """Blank line: end of the current event record."""


@dataclass(frozen=True)
class Unknown:
    """Field with a name outside KNOWN_FIELDS."""
    name: str
    value: str = ""


FieldEvent = Union[Comment, Field, DispatchBoundary, Unknown]

_BOUNDARY = DispatchBoundary()


def split_field(line: str) -> tuple[str, str]:
    """Split 'name:value' on the first colon, dropping one leading space.

    A line with no colon is a field name with an empty value.
    """
    if ":" not in line:
        return line, ""
    name, _, value = line.partition(":")
    if value.startswith(" "):
        value = value[1:]
    return name, value


def classify(line: str) -> FieldEvent:
    """Classify one line of the event stream."""
    if not line:
        return _BOUNDARY
    if line.startswith(":"):
        return Comment(line[1:])

    name, value = split_field(line)
    if name in KNOWN_FIELDS:
        return Field(name, value)
    return Unknown(name, value)
