"""
Field extraction from KBMAPI response bodies.

Paths are dotted names with optional list indices, e.g.
`pin` or `recovery_tokens[0].token`.
"""

from __future__ import annotations

import re
from typing import Any

from errors import QueryError

_STEP_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


def _steps(path: str) -> list[str | int]:
    steps: list[str | int] = []
    pos = 0
    for m in _STEP_RE.finditer(path):
        gap = path[pos:m.start()]
        if gap not in ("", "."):
            raise QueryError(f"malformed path {path!r}")
        name, index = m.groups()
        steps.append(int(index) if index is not None else name)
        pos = m.end()
    if not steps or pos != len(path):
        raise QueryError(f"malformed path {path!r}")
    return steps


def extract(doc: Any, path: str) -> Any:
    value = doc
    for step in _steps(path):
        try:
            if isinstance(step, int):
                if not isinstance(value, list):
                    raise TypeError
                value = value[step]
            else:
                if not isinstance(value, dict):
                    raise TypeError
                value = value[step]
        except (KeyError, IndexError, TypeError):
            raise QueryError(f"field {path!r} not present in response") from None
    return value
