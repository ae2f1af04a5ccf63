"""
InheritVault cell data codec.

A vault cell stores its metadata in the cell's ``output_data`` field:

    bytes 0-3   magic 'IVLT' (0x49564c54)
    byte  4     version (0x01)
    bytes 5+    UTF-8 JSON object with compact keys

Compact keys (fixed for interoperability with existing cells):

    oa  owner CKB address            (required)
    ut  unlock type                  (required, 'blockHeight' | 'timestamp')
    uv  unlock value                 (required, non-negative integer)
    on  owner display name           (optional)
    m   memo                         (optional)

Decoding never raises: data read back from the chain is untrusted and
anything malformed is simply "not a vault cell".
"""

import json
from typing import Optional, Dict, Any

from inheritvault.lib.util import hex_to_bytes, bytes_to_hex, SHANNONS_PER_CKB
from inheritvault.lib.vault import VaultPayload, UnlockCondition, UnlockKind

# Vault magic bytes
VAULT_MAGIC = b'IVLT'
VAULT_MAGIC_HEX = '49564c54'


class VaultVersion:
    V1 = 0x01

    CURRENT = V1


VAULT_HEADER = VAULT_MAGIC + bytes([VaultVersion.CURRENT])
HEADER_LEN = len(VAULT_HEADER)
# Header plus at least one byte of JSON body
MIN_DATA_LEN = HEADER_LEN + 1

# 0x-prefixed prefix for the indexer's output_data prefix filter
VAULT_DATA_PREFIX = bytes_to_hex(VAULT_HEADER)


class PayloadKeys:
    OWNER_ADDRESS = 'oa'
    OWNER_NAME = 'on'
    UNLOCK_TYPE = 'ut'
    UNLOCK_VALUE = 'uv'
    MEMO = 'm'


# Occupied-capacity accounting, in bytes (1 byte == 1 CKB)
CAPACITY_FIELD_SIZE = 8
LOCK_SCRIPT_SIZE = 53  # secp256k1-blake160: 32 code_hash + 1 hash_type + 20 args
CAPACITY_MARGIN = 2


def encode(payload: VaultPayload) -> bytes:
    """Encode vault metadata into cell data bytes."""
    obj: Dict[str, Any] = {
        PayloadKeys.OWNER_ADDRESS: payload.owner_address,
        PayloadKeys.UNLOCK_TYPE: payload.unlock.kind,
        PayloadKeys.UNLOCK_VALUE: payload.unlock.value,
    }
    if payload.owner_name:
        obj[PayloadKeys.OWNER_NAME] = payload.owner_name
    if payload.memo:
        obj[PayloadKeys.MEMO] = payload.memo
    body = json.dumps(obj, separators=(',', ':'), ensure_ascii=False)
    return VAULT_HEADER + body.encode('utf-8')


def encode_hex(payload: VaultPayload) -> str:
    """Encode vault metadata as a 0x-prefixed hex string for output_data."""
    return bytes_to_hex(encode(payload))


def is_vault_cell(data: bytes) -> bool:
    """Cheap prefix check: magic and version match."""
    return data[:HEADER_LEN] == VAULT_HEADER


def is_vault_cell_hex(hex_data: str) -> bool:
    data = hex_to_bytes(hex_data)
    if data is None:
        return False
    return is_vault_cell(data)


def decode(data: bytes) -> Optional[VaultPayload]:
    """Decode cell data bytes. Returns None if the data is not a vault payload."""
    if not data or len(data) < MIN_DATA_LEN:
        return None
    if not is_vault_cell(data):
        return None

    try:
        obj = json.loads(data[HEADER_LEN:].decode('utf-8'))
    except (UnicodeDecodeError, ValueError, RecursionError):
        return None
    if not isinstance(obj, dict):
        return None

    return _payload_from_dict(obj)


def decode_hex(hex_data: str) -> Optional[VaultPayload]:
    """Decode a 0x-prefixed hex string from output_data."""
    data = hex_to_bytes(hex_data)
    if data is None:
        return None
    return decode(data)


def _payload_from_dict(obj: Dict[str, Any]) -> Optional[VaultPayload]:
    owner_address = obj.get(PayloadKeys.OWNER_ADDRESS)
    if not isinstance(owner_address, str) or not owner_address:
        return None

    kind = obj.get(PayloadKeys.UNLOCK_TYPE)
    if kind not in UnlockKind.ALL:
        return None

    value = obj.get(PayloadKeys.UNLOCK_VALUE)
    # bool is an int subclass; reject it along with floats
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        return None

    owner_name = obj.get(PayloadKeys.OWNER_NAME)
    memo = obj.get(PayloadKeys.MEMO)
    if owner_name is not None and not isinstance(owner_name, str):
        return None
    if memo is not None and not isinstance(memo, str):
        return None

    return VaultPayload(
        owner_address=owner_address,
        unlock=UnlockCondition(kind, value),
        owner_name=owner_name or None,
        memo=memo or None,
    )


def data_size(payload: VaultPayload) -> int:
    """Byte length of the encoded cell data."""
    return len(encode(payload))


def minimum_capacity(payload: VaultPayload) -> int:
    """Minimum cell capacity in CKB for a vault holding this payload.

    CKB requires capacity (shannons) >= occupied bytes * 10^8, where the
    occupied bytes are the capacity field, the lock script and the data.
    """
    return CAPACITY_FIELD_SIZE + LOCK_SCRIPT_SIZE + data_size(payload) + CAPACITY_MARGIN


def minimum_capacity_shannons(payload: VaultPayload) -> int:
    return minimum_capacity(payload) * SHANNONS_PER_CKB
