"""
Environment configuration for InheritVault.

All settings come from environment variables and are read once when an
``Env`` is constructed. Components take the ``env`` object and read the
attributes they need with ``getattr(env, name, default)`` so they can also be
built without one in tests.
"""

import os
from typing import Optional, Dict

from inheritvault.lib import util
from inheritvault.lib.address import Network


NETWORK_CONFIGS: Dict[str, Dict[str, str]] = {
    Network.TESTNET: {
        'rpc_url': 'https://testnet.ckb.dev/rpc',
        'indexer_url': 'https://testnet.ckb.dev/indexer',
        'explorer_tx_url': 'https://pudge.explorer.nervos.org/transaction/',
        'label': 'Testnet (Pudge)',
    },
    Network.MAINNET: {
        'rpc_url': 'https://mainnet.ckb.dev/rpc',
        'indexer_url': 'https://mainnet.ckb.dev/indexer',
        'explorer_tx_url': 'https://explorer.nervos.org/transaction/',
        'label': 'Mainnet',
    },
}

DEFAULT_NETWORK = Network.TESTNET

# Vault amounts below this are refused even when the payload would fit
MIN_VAULT_CKB = 200


class EnvError(Exception):
    pass


class Env:
    """Wraps environment configuration."""

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self.logger = util.class_logger(__name__, self.__class__.__name__)
        self._environ = os.environ if environ is None else environ

        self.network = self.default('IVAULT_NETWORK', DEFAULT_NETWORK).lower()
        if self.network not in NETWORK_CONFIGS:
            raise EnvError(f'IVAULT_NETWORK must be one of {sorted(NETWORK_CONFIGS)}, '
                           f'got {self.network!r}')
        config = NETWORK_CONFIGS[self.network]

        self.rpc_url = self.default('IVAULT_RPC_URL', config['rpc_url'])
        self.indexer_url = self.default('IVAULT_INDEXER_URL', config['indexer_url'])
        self.explorer_tx_url = config['explorer_tx_url']
        self.rpc_timeout = self.number('IVAULT_RPC_TIMEOUT', 30.0)
        self.page_size = self.integer('IVAULT_PAGE_SIZE', 100)
        if self.page_size <= 0:
            raise EnvError('IVAULT_PAGE_SIZE must be positive')
        self.min_vault_ckb = self.integer('IVAULT_MIN_VAULT_CKB', MIN_VAULT_CKB)
        self.cache_path = self.default('IVAULT_CACHE_PATH', '')
        self.metrics_enabled = self.boolean('IVAULT_METRICS', True)
        self.log_level = self.default('LOG_LEVEL', 'INFO').upper()

        self.env_name = self.default('IVAULT_ENV', 'dev').lower()
        self.rest_api_key = self.default('REST_API_KEY', '').strip()
        if self.env_name == 'prod' and not self.rest_api_key:
            raise EnvError('REST_API_KEY must be set in production (IVAULT_ENV=prod)')

    def default(self, envvar: str, default: str) -> str:
        return self._environ.get(envvar, default)

    def integer(self, envvar: str, default: int) -> int:
        value = self._environ.get(envvar)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            raise EnvError(f'cannot convert envvar {envvar} value {value!r} to an integer')

    def number(self, envvar: str, default: float) -> float:
        value = self._environ.get(envvar)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            raise EnvError(f'cannot convert envvar {envvar} value {value!r} to a number')

    def boolean(self, envvar: str, default: bool) -> bool:
        value = self._environ.get(envvar)
        if value is None:
            return default
        return value.strip().lower() not in ('', '0', 'false', 'no', 'off')

    def explorer_url(self, tx_hash: str) -> str:
        return f'{self.explorer_tx_url}{tx_hash}'
