"""
Timelock encoding for vault claims.

A claim spends the vault cell with an input ``since`` value that encodes an
absolute maturity condition. Layout of the 64-bit since field:

    bit  63      relative flag (0 = absolute; always absolute here)
    bits 62-61   metric flag   (00 = block number, 01 = epoch, 10 = timestamp)
    bits 60-56   reserved, must be zero
    bits 55-0    value

Consensus validates an absolute since as strictly greater than the threshold,
so the encoder subtracts one unit (clamped at zero). A claim submitted exactly
at the advertised block or second is then accepted. ``is_satisfied`` answers
"has the advertised point arrived" and compares against the unadjusted value.
"""

from typing import Optional, Tuple

from inheritvault.lib.vault import UnlockCondition, UnlockKind

SINCE_RELATIVE_FLAG = 1 << 63
SINCE_METRIC_SHIFT = 61
SINCE_METRIC_MASK = 0b11 << SINCE_METRIC_SHIFT
SINCE_RESERVED_MASK = 0b11111 << 56
SINCE_VALUE_MASK = (1 << 56) - 1


class SinceMetric:
    BLOCK_NUMBER = 0b00
    EPOCH = 0b01
    TIMESTAMP = 0b10


SINCE_TIMESTAMP_FLAG = SinceMetric.TIMESTAMP << SINCE_METRIC_SHIFT  # 0x4000000000000000

_METRIC_FOR_KIND = {
    UnlockKind.BLOCK_HEIGHT: SinceMetric.BLOCK_NUMBER,
    UnlockKind.TIMESTAMP: SinceMetric.TIMESTAMP,
}
_KIND_FOR_METRIC = {metric: kind for kind, metric in _METRIC_FOR_KIND.items()}

# Creation-time sanity bounds
MIN_SANE_BLOCK_HEIGHT = 1_000_000
MIN_SANE_TIMESTAMP = 1_600_000_000
MAX_SANE_TIMESTAMP = 100_000_000_000  # anything larger is milliseconds


def encode_claim_since(condition: UnlockCondition) -> Optional[int]:
    """Return the absolute since value for claiming, or None if unencodable."""
    metric = _METRIC_FOR_KIND.get(condition.kind)
    if metric is None:
        return None
    value = condition.value
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        return None
    adjusted = max(0, value - 1)
    if adjusted > SINCE_VALUE_MASK:
        return None
    return (metric << SINCE_METRIC_SHIFT) | adjusted


def decode_since(since: int) -> Optional[UnlockCondition]:
    """Inverse of ``encode_claim_since`` for absolute block/timestamp values.

    The adjustment is added back, so a since of 0 decodes to a threshold of 1.
    Relative, epoch and malformed values return None.
    """
    if not isinstance(since, int) or since < 0 or since >> 64:
        return None
    if since & SINCE_RELATIVE_FLAG or since & SINCE_RESERVED_MASK:
        return None
    metric = (since & SINCE_METRIC_MASK) >> SINCE_METRIC_SHIFT
    kind = _KIND_FOR_METRIC.get(metric)
    if kind is None:
        return None
    return UnlockCondition(kind, (since & SINCE_VALUE_MASK) + 1)


def is_satisfied(condition: UnlockCondition, current_height: int,
                 current_timestamp: int) -> bool:
    """True once the advertised unlock point has been reached."""
    if condition.kind == UnlockKind.BLOCK_HEIGHT:
        return current_height >= condition.value
    if condition.kind == UnlockKind.TIMESTAMP:
        return current_timestamp >= condition.value
    return False


def remaining(condition: UnlockCondition, current_height: int,
              current_timestamp: int) -> int:
    """Blocks or seconds left until the condition is satisfied."""
    if condition.kind == UnlockKind.BLOCK_HEIGHT:
        return max(0, condition.value - current_height)
    return max(0, condition.value - current_timestamp)


def validate_unlock_condition(condition: UnlockCondition,
                              now: int) -> Tuple[bool, Optional[str]]:
    """
    Validate an unlock condition chosen for a new vault.

    Returns (valid, error_message).
    """
    if condition.kind not in UnlockKind.ALL:
        return False, f'Unknown unlock type {condition.kind!r}'

    value = condition.value
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        return False, 'Unlock value must be a positive integer'

    if condition.kind == UnlockKind.BLOCK_HEIGHT:
        if value < MIN_SANE_BLOCK_HEIGHT:
            return False, 'Block height seems too low; the chain is past 10 million blocks'
    else:
        if value < MIN_SANE_TIMESTAMP:
            return False, 'Invalid timestamp'
        if value > MAX_SANE_TIMESTAMP:
            return False, 'Timestamp must be Unix seconds, not milliseconds'
        if value < now:
            return False, 'Unlock timestamp must be in the future'

    if encode_claim_since(condition) is None:
        return False, 'Unlock value does not fit the since field'

    return True, None
