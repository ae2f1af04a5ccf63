"""
CKB address decoding.

Turns a ``ckb1...`` / ``ckt1...`` address into the lock script it encodes,
validating the bech32/bech32m checksum and the payload layout rather than
matching the character class with a regex.

Payload formats:

    0x00  full          code_hash(32) || hash_type(1) || args     bech32m
    0x01  short (dep.)  code_hash_index(1) || args                bech32
    0x02  full data     code_hash(32) || args                     bech32
    0x04  full type     code_hash(32) || args                     bech32

Reference: CKB RFC 0021 "CKB Address Format".
"""

from typing import Optional, Tuple, List

from inheritvault.lib.util import strip_0x
from inheritvault.lib.vault import Script

CHARSET = 'qpzry9x8gf2tvdw0s3jn54khce6mua7l'
_CHARSET_REV = {c: i for i, c in enumerate(CHARSET)}

BECH32_CONST = 1
BECH32M_CONST = 0x2bc830a3


class Network:
    MAINNET = 'mainnet'
    TESTNET = 'testnet'


HRP_FOR_NETWORK = {Network.MAINNET: 'ckb', Network.TESTNET: 'ckt'}
NETWORK_FOR_HRP = {hrp: net for net, hrp in HRP_FOR_NETWORK.items()}


class PayloadFormat:
    FULL = 0x00
    SHORT = 0x01
    FULL_DATA = 0x02
    FULL_TYPE = 0x04


HASH_TYPE_BY_BYTE = {0x00: 'data', 0x01: 'type', 0x02: 'data1', 0x04: 'data2'}
BYTE_BY_HASH_TYPE = {name: b for b, name in HASH_TYPE_BY_BYTE.items()}

SECP256K1_BLAKE160_CODE_HASH = '0x9bd7e06f3ecf4be0f2fcd2188b23f1b9fcc88e5d4b65a8637b17723bbda3cce8'
SECP256K1_MULTISIG_CODE_HASH = '0x5c5069eb0857efc65e1bca0c07df34c31663b3622fd3876c876320fc9634e2a8'
ANYONE_CAN_PAY_CODE_HASH = {
    Network.MAINNET: '0xd369597ff47f29fbc0d47d2e3775370d1250b85140c670e4718af712983a2354',
    Network.TESTNET: '0x3419a1c09eb2567f6552ee7a8ecffd64155cffe0f1796e6e61ec088d740c1356',
}


def _short_code_hash(index: int, network: str) -> Optional[str]:
    if index == 0x00:
        return SECP256K1_BLAKE160_CODE_HASH
    if index == 0x01:
        return SECP256K1_MULTISIG_CODE_HASH
    if index == 0x02:
        return ANYONE_CAN_PAY_CODE_HASH[network]
    return None


# ------------------------------------------------------------------
# bech32 / bech32m primitives
# ------------------------------------------------------------------

def _polymod(values: List[int]) -> int:
    generator = (0x3b6a57b2, 0x26508e6d, 0x1ea119fa, 0x3d4233dd, 0x2a1462b3)
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1ffffff) << 5 ^ value
        for i in range(5):
            chk ^= generator[i] if ((top >> i) & 1) else 0
    return chk


def _hrp_expand(hrp: str) -> List[int]:
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def _create_checksum(hrp: str, data: List[int], const: int) -> List[int]:
    values = _hrp_expand(hrp) + data
    polymod = _polymod(values + [0] * 6) ^ const
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def _convertbits(data, frombits: int, tobits: int, pad: bool) -> Optional[List[int]]:
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    for value in data:
        if value < 0 or value >> frombits:
            return None
        acc = (acc << frombits) | value
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)
    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None
    return ret


def bech32_decode(text: str) -> Optional[Tuple[str, bytes, int]]:
    """Decode a bech32 or bech32m string into (hrp, payload, checksum const).

    CKB full-format addresses exceed BIP-173's 90-character limit, so no
    length cap is applied.
    """
    if any(ord(c) < 33 or ord(c) > 126 for c in text):
        return None
    if text.lower() != text and text.upper() != text:
        return None
    text = text.lower()
    pos = text.rfind('1')
    if pos < 1 or pos + 7 > len(text):
        return None
    hrp = text[:pos]
    try:
        data = [_CHARSET_REV[c] for c in text[pos + 1:]]
    except KeyError:
        return None
    const = _polymod(_hrp_expand(hrp) + data)
    if const not in (BECH32_CONST, BECH32M_CONST):
        return None
    decoded = _convertbits(data[:-6], 5, 8, False)
    if decoded is None:
        return None
    return hrp, bytes(decoded), const


def bech32_encode(hrp: str, payload: bytes, const: int) -> str:
    data = _convertbits(payload, 8, 5, True)
    combined = data + _create_checksum(hrp, data, const)
    return hrp + '1' + ''.join(CHARSET[d] for d in combined)


# ------------------------------------------------------------------
# CKB addresses
# ------------------------------------------------------------------

def parse_address(address: str) -> Optional[Tuple[str, Script]]:
    """Decode an address into (network, lock script). Returns None if invalid."""
    if not isinstance(address, str):
        return None
    decoded = bech32_decode(address.strip())
    if decoded is None:
        return None
    hrp, payload, const = decoded
    network = NETWORK_FOR_HRP.get(hrp)
    if network is None or not payload:
        return None

    fmt = payload[0]
    body = payload[1:]

    if fmt == PayloadFormat.FULL:
        if const != BECH32M_CONST or len(body) < 33:
            return None
        hash_type = HASH_TYPE_BY_BYTE.get(body[32])
        if hash_type is None:
            return None
        return network, Script('0x' + body[:32].hex(), hash_type, '0x' + body[33:].hex())

    if const != BECH32_CONST:
        return None

    if fmt == PayloadFormat.SHORT:
        if len(body) < 21:
            return None
        code_hash = _short_code_hash(body[0], network)
        if code_hash is None:
            return None
        args = body[1:]
        if body[0] in (0x00, 0x01) and len(args) != 20:
            return None
        if body[0] == 0x02 and not 20 <= len(args) <= 22:
            return None
        return network, Script(code_hash, 'type', '0x' + args.hex())

    if fmt in (PayloadFormat.FULL_DATA, PayloadFormat.FULL_TYPE):
        if len(body) < 32:
            return None
        hash_type = 'data' if fmt == PayloadFormat.FULL_DATA else 'type'
        return network, Script('0x' + body[:32].hex(), hash_type, '0x' + body[32:].hex())

    return None


def address_to_script(address: str) -> Optional[Script]:
    parsed = parse_address(address)
    return parsed[1] if parsed else None


def is_valid_address(address: str, network: Optional[str] = None) -> bool:
    parsed = parse_address(address)
    if parsed is None:
        return False
    return network is None or parsed[0] == network


def encode_full_address(script: Script, network: str) -> str:
    """Encode a lock script as a full-format (bech32m) address."""
    code_hash = bytes.fromhex(strip_0x(script.code_hash))
    args = bytes.fromhex(strip_0x(script.args))
    payload = (bytes([PayloadFormat.FULL]) + code_hash
               + bytes([BYTE_BY_HASH_TYPE[script.hash_type]]) + args)
    return bech32_encode(HRP_FOR_NETWORK[network], payload, BECH32M_CONST)
