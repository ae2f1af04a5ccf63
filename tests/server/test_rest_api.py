"""
REST API Tests for InheritVault

Tests the FastAPI endpoints against a mocked resolver.
"""

import pytest
from unittest.mock import Mock, AsyncMock

from fastapi.testclient import TestClient

from inheritvault.lib.address import Network, encode_full_address
from inheritvault.lib.vault import (
    ChainStatus, OutPoint, ResolvedVault, TipHeader, UnlockCondition, VaultPayload,
)
from inheritvault.server.chain_client import RPCError, TransportError
from inheritvault.server.env import Env
from inheritvault.server.metrics import MetricNames, MetricsCollector

CKB = 10 ** 8
TX = '0x' + 'aa' * 32


def _vault(lock, live=True, status=ChainStatus.COMMITTED):
    return ResolvedVault(
        out_point=OutPoint(TX, 0),
        capacity=250 * CKB,
        receiving_script=lock,
        payload=VaultPayload('ckt1owner', UnlockCondition.block_height(20_000_000),
                             owner_name='Alice', memo='for you'),
        chain_status=status,
        is_live=live,
        block_number=42,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_resolver(beneficiary_lock):
    resolver = Mock()
    resolver.resolve_vault_by_out_point = AsyncMock(return_value=_vault(beneficiary_lock))
    resolver.resolve = AsyncMock(return_value=_vault(beneficiary_lock))
    resolver.enumerate_vaults_for_address = AsyncMock(return_value=[_vault(beneficiary_lock)])
    resolver.enumerate_vaults_for_script = AsyncMock(return_value=[_vault(beneficiary_lock)])
    resolver.client.get_tip_header = AsyncMock(
        return_value=TipHeader(height=25_000_000, timestamp=1_750_000_000))
    return resolver


@pytest.fixture
def collector():
    return MetricsCollector()


def _client(resolver, env, metrics):
    from inheritvault.server.rest_api import app, set_resolver
    set_resolver(resolver, env=env, metrics=metrics)
    return TestClient(app)


@pytest.fixture
def client(mock_resolver, collector):
    return _client(mock_resolver, Env(environ={}), collector)


# ===========================================================================
# Health
# ===========================================================================

class TestHealthEndpoints:

    def test_health(self, client):
        resp = client.get('/health')
        assert resp.status_code == 200
        data = resp.json()
        assert data['status'] == 'healthy'
        assert data['network'] == 'testnet'
        assert 'uptime_seconds' in data

    def test_health_degraded_without_resolver(self):
        client = _client(None, None, None)
        assert client.get('/health').json()['status'] == 'degraded'
        assert client.get('/tip').status_code == 503

    def test_health_live(self, client):
        resp = client.get('/health/live')
        assert resp.status_code == 200
        assert resp.json()['status'] == 'alive'

    def test_tip(self, client):
        resp = client.get('/tip')
        assert resp.status_code == 200
        assert resp.json() == {'height': 25_000_000, 'timestamp': 1_750_000_000}

    def test_tip_unavailable(self, client, mock_resolver):
        mock_resolver.client.get_tip_header.side_effect = TransportError('timeout')
        resp = client.get('/tip')
        assert resp.status_code == 503


# ===========================================================================
# Vaults
# ===========================================================================

class TestVaultEndpoints:

    def test_get_vault(self, client, mock_resolver, beneficiary_lock):
        resp = client.get(f'/vaults/{TX}/0')
        assert resp.status_code == 200
        data = resp.json()
        assert data['tx_hash'] == TX
        assert data['capacity_ckb'] == '250'
        assert data['state'] == 'live'
        assert data['unlock'] == {'type': 'blockHeight', 'value': 20_000_000}
        assert data['receiving_script'] == beneficiary_lock.to_rpc()
        assert data['owner_name'] == 'Alice'
        assert data['explorer_url'].endswith(TX)
        mock_resolver.resolve_vault_by_out_point.assert_awaited_once_with(TX, 0)

    def test_get_spent_vault(self, client, mock_resolver, beneficiary_lock):
        mock_resolver.resolve_vault_by_out_point.return_value = _vault(beneficiary_lock, live=False)
        assert client.get(f'/vaults/{TX}/0').json()['state'] == 'spent'

    def test_vault_not_found(self, client, mock_resolver):
        mock_resolver.resolve_vault_by_out_point.return_value = None
        assert client.get(f'/vaults/{TX}/3').status_code == 404

    @pytest.mark.parametrize('path', [
        '/vaults/0x1234/0',
        f'/vaults/{TX}/-1',
        f'/vaults/{TX}/abc',
    ])
    def test_invalid_out_point(self, client, path):
        assert client.get(path).status_code == 422

    def test_vault_rpc_error(self, client, mock_resolver):
        mock_resolver.resolve_vault_by_out_point.side_effect = RPCError('get_transaction', -1, 'x')
        assert client.get(f'/vaults/{TX}/0').status_code == 503

    def test_by_address(self, client, mock_resolver, beneficiary_address):
        resp = client.get(f'/vaults/by-address/{beneficiary_address}')
        assert resp.status_code == 200
        data = resp.json()
        assert data['count'] == 1
        assert data['vaults'][0]['tx_hash'] == TX
        mock_resolver.enumerate_vaults_for_address.assert_awaited_once_with(beneficiary_address)

    def test_by_address_invalid(self, client, mock_resolver):
        mock_resolver.enumerate_vaults_for_address.side_effect = ValueError('bad')
        assert client.get('/vaults/by-address/nope').status_code == 400

    def test_by_address_empty(self, client, mock_resolver, beneficiary_address):
        mock_resolver.enumerate_vaults_for_address.return_value = []
        data = client.get(f'/vaults/by-address/{beneficiary_address}').json()
        assert data == {'count': 0, 'vaults': []}

    def test_by_script(self, client, mock_resolver, beneficiary_lock):
        resp = client.get('/vaults/by-script', params=beneficiary_lock.to_rpc())
        assert resp.status_code == 200
        assert resp.json()['count'] == 1
        (script,), _ = mock_resolver.enumerate_vaults_for_script.call_args
        assert script == beneficiary_lock

    def test_by_script_bad_hash_type(self, client, beneficiary_lock):
        params = dict(beneficiary_lock.to_rpc(), hash_type='bogus')
        assert client.get('/vaults/by-script', params=params).status_code == 422


class TestClaimCheck:

    def test_claimable(self, client, beneficiary_address):
        resp = client.get(f'/vaults/{TX}/0/claim-check', params={'address': beneficiary_address})
        assert resp.status_code == 200
        assert resp.json()['claimable'] is True

    def test_wrong_wallet(self, client, owner_address):
        resp = client.get(f'/vaults/{TX}/0/claim-check', params={'address': owner_address})
        assert resp.status_code == 403

    def test_not_yet(self, client, mock_resolver, beneficiary_address):
        mock_resolver.client.get_tip_header.return_value = TipHeader(19_999_000, 1_750_000_000)
        resp = client.get(f'/vaults/{TX}/0/claim-check', params={'address': beneficiary_address})
        assert resp.status_code == 409
        assert resp.json()['remaining'] == 1000

    def test_gone(self, client, mock_resolver, beneficiary_lock, beneficiary_address):
        mock_resolver.resolve.return_value = _vault(beneficiary_lock, live=False)
        resp = client.get(f'/vaults/{TX}/0/claim-check', params={'address': beneficiary_address})
        assert resp.status_code == 404

    def test_chain_down(self, client, mock_resolver, beneficiary_address):
        mock_resolver.resolve.side_effect = TransportError('unreachable')
        resp = client.get(f'/vaults/{TX}/0/claim-check', params={'address': beneficiary_address})
        assert resp.status_code == 503

    def test_invalid_address(self, client):
        resp = client.get(f'/vaults/{TX}/0/claim-check', params={'address': 'nope'})
        assert resp.status_code == 400

    def test_mainnet_address_on_testnet(self, client, beneficiary_lock):
        address = encode_full_address(beneficiary_lock, Network.MAINNET)
        resp = client.get(f'/vaults/{TX}/0/claim-check', params={'address': address})
        # Eligibility compares lock scripts; the network prefix does not matter
        assert resp.status_code == 200


# ===========================================================================
# Security and metrics
# ===========================================================================

class TestApiKey:

    @pytest.fixture
    def keyed_client(self, mock_resolver, collector):
        return _client(mock_resolver, Env(environ={'REST_API_KEY': 'secret'}), collector)

    def test_missing_key(self, keyed_client):
        assert keyed_client.get(f'/vaults/{TX}/0').status_code == 401

    def test_wrong_key(self, keyed_client):
        resp = keyed_client.get(f'/vaults/{TX}/0', headers={'X-API-Key': 'nope'})
        assert resp.status_code == 401

    def test_valid_key(self, keyed_client):
        resp = keyed_client.get(f'/vaults/{TX}/0', headers={'X-API-Key': 'secret'})
        assert resp.status_code == 200

    def test_health_open(self, keyed_client):
        assert keyed_client.get('/health').status_code == 200


class TestMetricsEndpoint:

    def test_metrics(self, client, collector):
        collector.inc_counter(MetricNames.FALLBACK_SCANS)
        resp = client.get('/metrics')
        assert resp.status_code == 200
        assert resp.headers['content-type'].startswith('text/plain')
        assert f'{MetricNames.FALLBACK_SCANS} 1' in resp.text
        assert MetricNames.UPTIME in resp.text
