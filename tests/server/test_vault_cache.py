"""
Tests for the local vault reference cache.
"""

from unittest.mock import Mock, AsyncMock

import pytest

from inheritvault.lib.vault import (
    ChainStatus, OutPoint, ResolvedVault, UnlockCondition, VaultPayload,
)
from inheritvault.server.vault_cache import (
    CachedStatus,
    CborFileVaultCache,
    MemoryVaultCache,
    VaultRecord,
    generate_id,
    open_cache,
    refresh_record,
)

TX = '0x' + 'ab' * 32


def _record(tx_hash=TX, created_at='2026-01-01T00:00:00+00:00', status=CachedStatus.PENDING,
            memo='hello'):
    return VaultRecord(
        id=generate_id(),
        network='testnet',
        beneficiary_address='ckt1beneficiary',
        amount_ckb='250',
        unlock=UnlockCondition.block_height(20_000_000),
        tx_hash=tx_hash,
        out_point=OutPoint(tx_hash, 0),
        created_at=created_at,
        memo=memo,
        status=status,
    )


def _resolved(out_point, status, live, lock):
    return ResolvedVault(
        out_point=out_point,
        capacity=250 * 10 ** 8,
        receiving_script=lock,
        payload=VaultPayload('ckt1owner', UnlockCondition.block_height(20_000_000)),
        chain_status=status,
        is_live=live,
    )


class TestVaultRecord:

    def test_serialization(self):
        record = _record()
        assert VaultRecord.from_bytes(record.to_bytes()) == record

    def test_optional_fields_omitted(self):
        record = _record(memo=None, status=None)
        restored = VaultRecord.from_bytes(record.to_bytes())
        assert restored.memo is None
        assert restored.status is None

    def test_generate_id_unique(self):
        ids = {generate_id() for _ in range(100)}
        assert len(ids) == 100


class TestMemoryVaultCache:

    def test_put_get_delete(self):
        cache = MemoryVaultCache()
        record = _record()
        cache.put(record)
        assert cache.get(OutPoint(TX, 0)) == record
        assert cache.delete(OutPoint(TX, 0))
        assert cache.get(OutPoint(TX, 0)) is None
        assert not cache.delete(OutPoint(TX, 0))

    def test_key_case_insensitive(self):
        cache = MemoryVaultCache()
        cache.put(_record())
        assert cache.get(OutPoint(TX.upper().replace('0X', '0x'), 0)) is not None

    def test_newest_first(self):
        cache = MemoryVaultCache()
        cache.put(_record('0x' + '01' * 32, created_at='2026-01-01T00:00:00+00:00'))
        cache.put(_record('0x' + '02' * 32, created_at='2026-03-01T00:00:00+00:00'))
        cache.put(_record('0x' + '03' * 32, created_at='2026-02-01T00:00:00+00:00'))
        assert [r.tx_hash[2:4] for r in cache.records()] == ['02', '03', '01']

    def test_open_cache_without_path(self):
        assert type(open_cache(None)) is MemoryVaultCache


class TestCborFileVaultCache:

    def test_persists(self, tmp_path):
        path = str(tmp_path / 'vaults.cbor')
        record = _record()
        CborFileVaultCache(path).put(record)

        reopened = CborFileVaultCache(path)
        assert reopened.get(OutPoint(TX, 0)) == record

    def test_delete_persists(self, tmp_path):
        path = str(tmp_path / 'vaults.cbor')
        cache = CborFileVaultCache(path)
        cache.put(_record())
        cache.delete(OutPoint(TX, 0))
        assert CborFileVaultCache(path).records() == []

    def test_creates_directory(self, tmp_path):
        path = str(tmp_path / 'nested' / 'dir' / 'vaults.cbor')
        CborFileVaultCache(path).put(_record())
        assert (tmp_path / 'nested' / 'dir' / 'vaults.cbor').exists()

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / 'vaults.cbor'
        path.write_bytes(b'\xff\x00garbage')
        cache = CborFileVaultCache(str(path))
        assert cache.records() == []

    def test_open_cache_with_path(self, tmp_path):
        env = Mock(cache_path=str(tmp_path / 'vaults.cbor'))
        assert isinstance(open_cache(env), CborFileVaultCache)


class TestRefreshRecord:

    @pytest.mark.asyncio
    @pytest.mark.parametrize('status,live,expected', [
        (ChainStatus.COMMITTED, True, CachedStatus.LIVE),
        (ChainStatus.COMMITTED, False, CachedStatus.SPENT),
        (ChainStatus.REJECTED, False, CachedStatus.REJECTED),
        (ChainStatus.PROPOSED, False, CachedStatus.PENDING),
    ])
    async def test_updates_hint(self, beneficiary_lock, status, live, expected):
        cache = MemoryVaultCache()
        cache.put(_record())
        out_point = OutPoint(TX, 0)
        fresh = _resolved(out_point, status, live, beneficiary_lock)
        resolver = Mock()
        resolver.resolve = AsyncMock(return_value=fresh)

        assert await refresh_record(cache, resolver, out_point) is fresh
        assert cache.get(out_point).status == expected
        resolver.resolve.assert_awaited_once_with(out_point)

    @pytest.mark.asyncio
    async def test_not_found_leaves_record(self):
        cache = MemoryVaultCache()
        record = _record(status=CachedStatus.LIVE)
        cache.put(record)
        resolver = Mock()
        resolver.resolve = AsyncMock(return_value=None)

        assert await refresh_record(cache, resolver, OutPoint(TX, 0)) is None
        assert cache.get(OutPoint(TX, 0)) == record

    @pytest.mark.asyncio
    async def test_unknown_state_leaves_hint(self, beneficiary_lock):
        cache = MemoryVaultCache()
        cache.put(_record(status=CachedStatus.PENDING))
        out_point = OutPoint(TX, 0)
        resolver = Mock()
        resolver.resolve = AsyncMock(
            return_value=_resolved(out_point, ChainStatus.UNKNOWN, False, beneficiary_lock))

        await refresh_record(cache, resolver, out_point)
        assert cache.get(out_point).status == CachedStatus.PENDING

    @pytest.mark.asyncio
    async def test_uncached_vault(self, beneficiary_lock):
        cache = MemoryVaultCache()
        out_point = OutPoint(TX, 0)
        fresh = _resolved(out_point, ChainStatus.COMMITTED, True, beneficiary_lock)
        resolver = Mock()
        resolver.resolve = AsyncMock(return_value=fresh)

        assert await refresh_record(cache, resolver, out_point) is fresh
        assert cache.get(out_point) is None
