"""
Vault data model.

Plain immutable records shared by the codec, the timelock encoder, the chain
client and the resolver. None of these types is ever persisted as the source
of truth: a ResolvedVault is rebuilt from the ledger on every query.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, Any

from inheritvault.lib.util import shannons_to_ckb


class UnlockKind:
    BLOCK_HEIGHT = 'blockHeight'
    TIMESTAMP = 'timestamp'

    ALL = (BLOCK_HEIGHT, TIMESTAMP)


class ChainStatus:
    """Transaction status as reported by ``get_transaction``."""
    PENDING = 'pending'
    PROPOSED = 'proposed'
    COMMITTED = 'committed'
    REJECTED = 'rejected'
    UNKNOWN = 'unknown'

    ALL = (PENDING, PROPOSED, COMMITTED, REJECTED, UNKNOWN)

    @classmethod
    def normalize(cls, status) -> str:
        if isinstance(status, str) and status.lower() in cls.ALL:
            return status.lower()
        return cls.UNKNOWN


class VaultState:
    """Lifecycle state of a vault cell derived from status and liveness."""
    PENDING = 'pending'
    LIVE = 'live'
    SPENT = 'spent'
    REJECTED = 'rejected'
    UNKNOWN = 'unknown'


@dataclass(frozen=True)
class UnlockCondition:
    """Absolute unlock threshold: a block height or unix seconds."""
    kind: str
    value: int

    @classmethod
    def block_height(cls, height: int) -> 'UnlockCondition':
        return cls(UnlockKind.BLOCK_HEIGHT, height)

    @classmethod
    def timestamp(cls, seconds: int) -> 'UnlockCondition':
        return cls(UnlockKind.TIMESTAMP, seconds)

    def describe(self) -> str:
        if self.kind == UnlockKind.BLOCK_HEIGHT:
            return f'Block Height #{self.value:,}'
        return f'Unix time {self.value}'


@dataclass(frozen=True)
class VaultPayload:
    """Metadata carried in a vault cell's data field."""
    owner_address: str
    unlock: UnlockCondition
    owner_name: Optional[str] = None
    memo: Optional[str] = None


@dataclass(frozen=True)
class OutPoint:
    tx_hash: str
    index: int

    def to_rpc(self) -> Dict[str, str]:
        return {'tx_hash': self.tx_hash, 'index': hex(self.index)}

    def __str__(self):
        return f'{self.tx_hash}:{self.index}'


@dataclass(frozen=True)
class Script:
    """A lock script; opaque here beyond equality."""
    code_hash: str
    hash_type: str
    args: str

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> 'Script':
        return cls(
            code_hash=data['code_hash'],
            hash_type=data['hash_type'],
            args=data['args'],
        )

    def to_rpc(self) -> Dict[str, str]:
        return {
            'code_hash': self.code_hash,
            'hash_type': self.hash_type,
            'args': self.args,
        }

    def __eq__(self, other):
        if not isinstance(other, Script):
            return NotImplemented
        return (self.code_hash.lower() == other.code_hash.lower()
                and self.hash_type == other.hash_type
                and self.args.lower() == other.args.lower())

    def __hash__(self):
        return hash((self.code_hash.lower(), self.hash_type, self.args.lower()))


@dataclass(frozen=True)
class TipHeader:
    height: int
    timestamp: int  # seconds


@dataclass(frozen=True)
class ResolvedVault:
    """A vault as currently seen on chain. Never authoritative once cached."""
    out_point: OutPoint
    capacity: int  # shannons
    receiving_script: Script
    payload: VaultPayload
    chain_status: str
    is_live: bool
    block_number: Optional[int] = None

    @property
    def capacity_ckb(self) -> Decimal:
        return shannons_to_ckb(self.capacity)

    @property
    def state(self) -> str:
        if self.is_live:
            return VaultState.LIVE
        if self.chain_status == ChainStatus.COMMITTED:
            return VaultState.SPENT
        if self.chain_status in (ChainStatus.PENDING, ChainStatus.PROPOSED):
            return VaultState.PENDING
        if self.chain_status == ChainStatus.REJECTED:
            return VaultState.REJECTED
        return VaultState.UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        payload = self.payload
        return {
            'tx_hash': self.out_point.tx_hash,
            'index': self.out_point.index,
            'capacity': self.capacity,
            'capacity_ckb': str(self.capacity_ckb),
            'receiving_script': self.receiving_script.to_rpc(),
            'owner_address': payload.owner_address,
            'owner_name': payload.owner_name,
            'memo': payload.memo,
            'unlock': {'type': payload.unlock.kind, 'value': payload.unlock.value},
            'chain_status': self.chain_status,
            'is_live': self.is_live,
            'state': self.state,
            'block_number': self.block_number,
        }
