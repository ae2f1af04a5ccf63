"""
Vault creation and claiming.

Transactions are assembled here as plain JSON-RPC shaped dicts; the wallet
behind the ``Signer`` adds inputs, change and fee, signs and broadcasts.
Every decision is made against a fresh resolve of the vault, never against
the local cache.
"""

import time
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, Tuple, Protocol

from inheritvault.lib import codec, util
from inheritvault.lib.address import parse_address
from inheritvault.lib.timelock import (
    encode_claim_since, is_satisfied, remaining, validate_unlock_condition,
)
from inheritvault.lib.util import ckb_to_shannons, int_to_hex
from inheritvault.lib.vault import (
    OutPoint, ResolvedVault, Script, UnlockCondition, UnlockKind, VaultPayload,
)
from inheritvault.server.chain_client import ChainQueryError
from inheritvault.server.env import MIN_VAULT_CKB
from inheritvault.server.vault_cache import (
    CachedStatus, VaultRecord, generate_id, utc_now_iso,
)


class Signer(Protocol):
    """Wallet capability used to fund, sign and broadcast transactions."""

    async def get_address(self) -> str:
        ...

    async def get_balance(self) -> int:
        """Spendable balance in shannons."""
        ...

    async def complete_inputs_and_fee(self, tx: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def send_transaction(self, tx: Dict[str, Any]) -> str:
        """Sign and broadcast; returns the transaction hash."""
        ...


class VaultError(Exception):
    """Base class for user-visible vault failures."""


class InvalidVaultRequest(VaultError):
    pass


class VaultNotFound(VaultError):
    pass


class NotBeneficiary(VaultError):
    pass


class VaultNotUnlockable(VaultError):
    """The unlock point has not been reached yet."""

    def __init__(self, unlock: UnlockCondition, remaining_units: int):
        unit = 'blocks' if unlock.kind == UnlockKind.BLOCK_HEIGHT else 'seconds'
        super().__init__(f'vault unlocks at {unlock.describe()}; '
                         f'{remaining_units} {unit} remaining')
        self.unlock = unlock
        self.remaining = remaining_units


class QueryUnavailable(VaultError):
    """The chain could not be queried."""


def build_create_vault_tx(beneficiary_script: Script, amount_shannons: int,
                          payload: VaultPayload) -> Dict[str, Any]:
    """Unfunded transaction with the vault cell as output 0."""
    return {
        'inputs': [],
        'outputs': [{
            'capacity': int_to_hex(amount_shannons),
            'lock': beneficiary_script.to_rpc(),
            'type': None,
        }],
        'outputs_data': [codec.encode_hex(payload)],
    }


def build_claim_tx(vault: ResolvedVault, recipient_script: Script,
                   since: int) -> Dict[str, Any]:
    """Spend the vault cell in full to ``recipient_script``.

    The fee is taken by the signer when it completes the transaction.
    """
    return {
        'inputs': [{
            'previous_output': vault.out_point.to_rpc(),
            'since': int_to_hex(since),
        }],
        'outputs': [{
            'capacity': int_to_hex(vault.capacity),
            'lock': recipient_script.to_rpc(),
            'type': None,
        }],
        'outputs_data': ['0x'],
    }


class VaultService:
    """Creates and claims vaults through a caller-supplied signer."""

    def __init__(self, resolver, cache=None, env=None):
        self.logger = util.class_logger(__name__, self.__class__.__name__)
        self.resolver = resolver
        self.cache = cache
        self.network = getattr(env, 'network', None)
        self.min_vault_ckb = getattr(env, 'min_vault_ckb', MIN_VAULT_CKB)

    def _parse_address(self, address: str, what: str) -> Script:
        parsed = parse_address(address)
        if parsed is None:
            raise InvalidVaultRequest(f'invalid {what} address')
        network, script = parsed
        if self.network and network != self.network:
            raise InvalidVaultRequest(f'{what} address is for {network}, '
                                      f'expected {self.network}')
        return script

    async def create_vault(self, signer: Signer, beneficiary_address: str, amount_ckb,
                           unlock: UnlockCondition, owner_name: Optional[str] = None,
                           memo: Optional[str] = None,
                           now: Optional[int] = None) -> Tuple[str, OutPoint]:
        """
        Lock ``amount_ckb`` in a vault cell for the beneficiary.

        Returns (tx_hash, out_point) of the broadcast transaction.
        """
        script = self._parse_address(beneficiary_address, 'beneficiary')

        try:
            amount = Decimal(str(amount_ckb))
        except InvalidOperation:
            raise InvalidVaultRequest(f'invalid amount {amount_ckb!r}')

        valid, error = validate_unlock_condition(unlock, int(time.time()) if now is None else now)
        if not valid:
            raise InvalidVaultRequest(error)

        owner_address = await signer.get_address()
        payload = VaultPayload(owner_address=owner_address, unlock=unlock,
                               owner_name=owner_name or None, memo=memo or None)

        minimum = max(self.min_vault_ckb, codec.minimum_capacity(payload))
        if amount < minimum:
            raise InvalidVaultRequest(f'amount must be at least {minimum} CKB')

        amount_shannons = ckb_to_shannons(amount)
        balance = await signer.get_balance()
        if balance < amount_shannons:
            raise InvalidVaultRequest(f'insufficient balance for {amount} CKB')

        tx = build_create_vault_tx(script, amount_shannons, payload)
        tx = await signer.complete_inputs_and_fee(tx)
        tx_hash = await signer.send_transaction(tx)
        out_point = OutPoint(tx_hash, 0)
        self.logger.info(f'created vault {out_point} for {amount} CKB, '
                         f'unlock {unlock.describe()}')

        if self.cache is not None:
            self.cache.put(VaultRecord(
                id=generate_id(),
                network=self.network or '',
                beneficiary_address=beneficiary_address,
                amount_ckb=str(amount),
                unlock=unlock,
                tx_hash=tx_hash,
                out_point=out_point,
                created_at=utc_now_iso(),
                memo=payload.memo,
                status=CachedStatus.PENDING,
            ))
        return tx_hash, out_point

    async def check_claim(self, signer: Signer, out_point: OutPoint) -> ResolvedVault:
        """Fresh eligibility check; returns the vault if the signer can claim it now."""
        try:
            vault = await self.resolver.resolve(out_point)
            if vault is None or not vault.is_live:
                raise VaultNotFound(f'no live vault at {out_point}')
            tip = await self.resolver.client.get_tip_header()
        except ChainQueryError as e:
            raise QueryUnavailable(str(e)) from e

        signer_address = await signer.get_address()
        parsed = parse_address(signer_address)
        if parsed is None or parsed[1] != vault.receiving_script:
            raise NotBeneficiary(f'connected wallet is not the beneficiary of {out_point}')

        unlock = vault.payload.unlock
        if not is_satisfied(unlock, tip.height, tip.timestamp):
            raise VaultNotUnlockable(unlock, remaining(unlock, tip.height, tip.timestamp))
        return vault

    async def claim_vault(self, signer: Signer, out_point: OutPoint,
                          recipient_address: Optional[str] = None) -> str:
        """Claim a vault to ``recipient_address`` (default: the signer). Returns the tx hash."""
        vault = await self.check_claim(signer, out_point)

        since = encode_claim_since(vault.payload.unlock)
        if since is None:
            raise InvalidVaultRequest(f'unlock condition of {out_point} cannot be encoded')

        if recipient_address:
            recipient = self._parse_address(recipient_address, 'recipient')
        else:
            recipient = vault.receiving_script

        tx = build_claim_tx(vault, recipient, since)
        tx = await signer.complete_inputs_and_fee(tx)
        tx_hash = await signer.send_transaction(tx)
        self.logger.info(f'claimed vault {out_point} in {tx_hash}')

        if self.cache is not None:
            record = self.cache.get(out_point)
            if record is not None:
                self.cache.put(replace(record, status=CachedStatus.SPENT))
        return tx_hash
