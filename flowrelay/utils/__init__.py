from .correlation import (
    CorrelationParts,
    decode_correlation_id,
    encode_correlation_id,
    mint_token,
)
from .paths import get_path, interpolate, render_template, set_path
from .retry import compute_backoff, execute_with_retry, schedule_retry

__all__ = [
    "CorrelationParts",
    "compute_backoff",
    "decode_correlation_id",
    "encode_correlation_id",
    "execute_with_retry",
    "get_path",
    "interpolate",
    "mint_token",
    "render_template",
    "schedule_retry",
    "set_path",
]
