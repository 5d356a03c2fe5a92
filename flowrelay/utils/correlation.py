"""Correlation tokens used to route callbacks to runs."""

from __future__ import annotations

import uuid
from typing import NamedTuple, Optional

SEPARATOR = ":"


class CorrelationParts(NamedTuple):
    graph_id: str
    run_id: str
    node_id: Optional[str] = None


def mint_token() -> str:
    """Return a fresh, unguessable run token."""
    return uuid.uuid4().hex


def encode_correlation_id(graph_id: str, run_id: str, node_id: Optional[str] = None) -> str:
    """Build a composite ``graph:run[:node]`` token."""
    parts = [graph_id, run_id]
    if node_id:
        parts.append(node_id)
    return SEPARATOR.join(parts)


def decode_correlation_id(token: str) -> CorrelationParts:
    """Split a composite token produced by :func:`encode_correlation_id`."""
    parts = token.split(SEPARATOR, 2)
    if len(parts) < 2:
        raise ValueError(f"Not a composite correlation id: {token!r}")
    node_id = parts[2] if len(parts) == 3 and parts[2] else None
    return CorrelationParts(graph_id=parts[0], run_id=parts[1], node_id=node_id)


def is_composite(token: str) -> bool:
    return SEPARATOR in token
