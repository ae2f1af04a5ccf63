"""
Local reference cache of vaults created from this client.

The cache is a convenience index: it remembers which outpoints a user created
so they can be listed without a chain scan. The cached status is only a hint.
Callers go through ``refresh_record``, which resolves the vault fresh from the
chain and rewrites the hint, and never trust a record on its own.
"""

import os
import random
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional, List, Dict, Protocol

import cbor2

from inheritvault.lib import util
from inheritvault.lib.vault import OutPoint, UnlockCondition, ResolvedVault, VaultState


class CachedStatus:
    PENDING = 'pending'
    LIVE = 'live'
    SPENT = 'spent'
    REJECTED = 'rejected'


_STATUS_FOR_STATE = {
    VaultState.PENDING: CachedStatus.PENDING,
    VaultState.LIVE: CachedStatus.LIVE,
    VaultState.SPENT: CachedStatus.SPENT,
    VaultState.REJECTED: CachedStatus.REJECTED,
}


def generate_id() -> str:
    """Time-ordered id with a random suffix."""
    return f'{int(time.time() * 1000):x}-{random.getrandbits(32):08x}'


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class VaultRecord:
    id: str
    network: str
    beneficiary_address: str
    amount_ckb: str
    unlock: UnlockCondition
    tx_hash: str
    out_point: OutPoint
    created_at: str
    memo: Optional[str] = None
    status: Optional[str] = None

    def to_bytes(self) -> bytes:
        """Serialize to CBOR with short keys."""
        data = {
            'id': self.id,
            'nw': self.network,
            'ba': self.beneficiary_address,
            'am': self.amount_ckb,
            'ut': self.unlock.kind,
            'uv': self.unlock.value,
            'tx': self.tx_hash,
            'oi': self.out_point.index,
            'ca': self.created_at,
            'm': self.memo,
            'st': self.status,
        }
        return cbor2.dumps({k: v for k, v in data.items() if v is not None})

    @classmethod
    def from_bytes(cls, data: bytes) -> 'VaultRecord':
        d = cbor2.loads(data)
        return cls(
            id=d['id'],
            network=d['nw'],
            beneficiary_address=d['ba'],
            amount_ckb=d['am'],
            unlock=UnlockCondition(d['ut'], d['uv']),
            tx_hash=d['tx'],
            out_point=OutPoint(d['tx'], d['oi']),
            created_at=d['ca'],
            memo=d.get('m'),
            status=d.get('st'),
        )


class VaultCache(Protocol):
    """Key-value repository of vault records keyed by outpoint."""

    def get(self, out_point: OutPoint) -> Optional[VaultRecord]:
        ...

    def put(self, record: VaultRecord) -> None:
        ...

    def delete(self, out_point: OutPoint) -> bool:
        ...


def _key(out_point: OutPoint) -> str:
    return f'{out_point.tx_hash.lower()}:{out_point.index}'


class MemoryVaultCache:
    """In-process cache; contents vanish with the process."""

    def __init__(self):
        self._records: Dict[str, VaultRecord] = {}

    def get(self, out_point: OutPoint) -> Optional[VaultRecord]:
        return self._records.get(_key(out_point))

    def put(self, record: VaultRecord) -> None:
        self._records[_key(record.out_point)] = record

    def delete(self, out_point: OutPoint) -> bool:
        return self._records.pop(_key(out_point), None) is not None

    def records(self) -> List[VaultRecord]:
        """All records, newest first."""
        return sorted(self._records.values(), key=lambda r: r.created_at, reverse=True)


class CborFileVaultCache(MemoryVaultCache):
    """Cache persisted as a single CBOR file of serialized records."""

    def __init__(self, path: str):
        super().__init__()
        self.logger = util.class_logger(__name__, self.__class__.__name__)
        self.path = path
        self._load()

    def _load(self):
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, 'rb') as f:
                blobs = cbor2.load(f)
            for blob in blobs:
                record = VaultRecord.from_bytes(blob)
                self._records[_key(record.out_point)] = record
            self.logger.info(f'loaded {len(self._records)} vault records from {self.path}')
        except (OSError, ValueError, KeyError, TypeError) as e:
            # A broken cache only costs the listing; the chain still has the vaults
            self.logger.error(f'error loading vault cache {self.path}: {e}')
            self._records = {}

    def _save(self):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = self.path + '.tmp'
        try:
            with open(tmp_path, 'wb') as f:
                cbor2.dump([r.to_bytes() for r in self._records.values()], f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            self.logger.error(f'error saving vault cache {self.path}: {e}')

    def put(self, record: VaultRecord) -> None:
        super().put(record)
        self._save()

    def delete(self, out_point: OutPoint) -> bool:
        removed = super().delete(out_point)
        if removed:
            self._save()
        return removed


def open_cache(env=None) -> MemoryVaultCache:
    path = getattr(env, 'cache_path', '') if env else ''
    if path:
        return CborFileVaultCache(path)
    return MemoryVaultCache()


async def refresh_record(cache: VaultCache, resolver, out_point: OutPoint) -> Optional[ResolvedVault]:
    """
    Resolve a vault fresh from the chain and update the cached status hint.

    Returns the fresh vault, or None when the chain does not (yet) show it;
    the cached record is left as it was in that case.
    """
    vault = await resolver.resolve(out_point)
    if vault is None:
        return None
    record = cache.get(out_point)
    status = _STATUS_FOR_STATE.get(vault.state)
    if record is not None and status is not None and record.status != status:
        cache.put(replace(record, status=status))
    return vault
