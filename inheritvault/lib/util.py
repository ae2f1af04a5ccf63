"""
Miscellaneous helpers shared by the codec, the chain client and the resolver.

CKB JSON-RPC encodes every integer as a 0x-prefixed hex quantity and every
byte string as 0x-prefixed hex; the helpers here convert in both directions
without raising on malformed input where callers expect a soft failure.
"""

import logging
from decimal import Decimal
from typing import Optional

# 1 CKB = 10^8 shannons
SHANNONS_PER_CKB = 100_000_000

LOG_FORMAT = '%(asctime)s %(levelname)s:%(name)s:%(message)s'


def class_logger(path: str, classname: str) -> logging.Logger:
    """Return a hierarchical logger for a class."""
    return logging.getLogger(path).getChild(classname)


def setup_logging(level: str = 'INFO'):
    """Configure the root logger once for scripts and the REST server."""
    logging.basicConfig(format=LOG_FORMAT, level=level.upper())


def strip_0x(text: str) -> str:
    if text[:2] in ('0x', '0X'):
        return text[2:]
    return text


def hex_to_bytes(text: str) -> Optional[bytes]:
    """Decode a 0x-prefixed (or bare) hex string. Returns None if malformed."""
    if not isinstance(text, str):
        return None
    try:
        return bytes.fromhex(strip_0x(text))
    except ValueError:
        return None


def bytes_to_hex(data: bytes) -> str:
    return '0x' + data.hex()


def hex_to_int(text: str) -> int:
    """Parse a JSON-RPC hex quantity such as ``0x1f``.

    Raises ValueError on malformed input; the chain client turns that into a
    transport error because it means the node sent something unexpected.
    """
    if not isinstance(text, str):
        raise ValueError(f'expected hex quantity, got {text!r}')
    return int(strip_0x(text), 16)


def int_to_hex(value: int) -> str:
    return hex(value)


def shannons_to_ckb(shannons: int) -> Decimal:
    return Decimal(shannons) / SHANNONS_PER_CKB


def ckb_to_shannons(amount) -> int:
    """Convert a CKB amount (int, str or Decimal) to whole shannons."""
    return int(Decimal(str(amount)) * SHANNONS_PER_CKB)
