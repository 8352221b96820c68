"""Minimal JSONPath: ``$``, ``.name``, ``['name']`` and ``[index]``."""

from __future__ import annotations

import re
from typing import Any

from hubstore.exceptions import MalformedPathError, PathNotFoundError

_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_\-]*")
_BRACKET = re.compile(r"""\[(?:'([^']*)'|"([^"]*)"|(\d+))\]""")


def compile_path(path: str) -> list[str | int]:
    """Split a path into member names and list indexes.

    Raises:
        MalformedPathError: the expression is outside the supported subset.
    """
    expr = path.strip()
    if expr.startswith("$"):
        expr = expr[1:]
    elif expr and not expr.startswith(("[", ".")):
        expr = "." + expr

    steps: list[str | int] = []
    pos = 0
    while pos < len(expr):
        if expr[pos] == ".":
            match = _NAME.match(expr, pos + 1)
            if match is None:
                raise MalformedPathError(f"malformed path [{path}] at offset {pos}")
            steps.append(match.group(0))
            pos = match.end()
            continue
        match = _BRACKET.match(expr, pos)
        if match is None:
            raise MalformedPathError(f"malformed path [{path}] at offset {pos}")
        single, double, index = match.groups()
        steps.append(int(index) if index is not None else (single if single is not None else double))
        pos = match.end()
    return steps


def evaluate(content: Any, path: str) -> Any:
    """Select the value at ``path``; an empty path selects everything."""
    node = content
    for step in compile_path(path):
        if isinstance(step, int):
            if not isinstance(node, list) or step >= len(node):
                raise PathNotFoundError(f"path [{path}] not found in document")
            node = node[step]
        else:
            if not isinstance(node, dict) or step not in node:
                raise PathNotFoundError(f"path [{path}] not found in document")
            node = node[step]
    return node
