"""
Vault resolution against the ledger.

Reconstructs vault state from the node and the indexer on every call:

* ``enumerate_vaults_for_script`` lists the live vault cells locked by a
  beneficiary's script. The indexer is asked to filter on the vault data
  prefix; indexers that reject the filter get the same scan unfiltered and
  the prefix is checked client-side instead.
* ``resolve_vault_by_out_point`` rebuilds one vault from its creating
  transaction, merging the transaction status with a liveness check so a
  committed vault that was later claimed reads as spent.

Nothing is cached here; results are fresh immutable values.
"""

from typing import Optional, List

from inheritvault.lib import codec, util
from inheritvault.lib.address import parse_address
from inheritvault.lib.util import hex_to_bytes, hex_to_int
from inheritvault.lib.vault import (
    ChainStatus, OutPoint, ResolvedVault, Script,
)
from inheritvault.server.chain_client import (
    ChainQueryClient, IndexedCell, RPCError, TransportError,
)
from inheritvault.server.metrics import MetricNames, get_metrics


class VaultResolver:
    """Reads vault cells back from the chain."""

    def __init__(self, client: ChainQueryClient, env=None, metrics=None):
        self.logger = util.class_logger(__name__, self.__class__.__name__)
        self.client = client
        self.env = env
        self.metrics = metrics or get_metrics()

    # ========================================================================
    # Enumeration
    # ========================================================================

    async def enumerate_vaults_for_script(self, script: Script) -> List[ResolvedVault]:
        """All live vault cells locked by ``script``, newest first."""
        try:
            vaults = await self._scan(script, server_filter=True)
        except RPCError as e:
            self.logger.warning(f'indexer rejected prefix-filtered get_cells ({e}); '
                                f'rescanning without filter')
            self.metrics.inc_counter(MetricNames.FALLBACK_SCANS)
            vaults = await self._scan(script, server_filter=False)
        self.metrics.inc_counter(MetricNames.VAULTS_ENUMERATED, len(vaults))
        return vaults

    async def enumerate_vaults_for_address(self, address: str) -> List[ResolvedVault]:
        parsed = parse_address(address)
        if parsed is None:
            raise ValueError(f'invalid CKB address: {address!r}')
        return await self.enumerate_vaults_for_script(parsed[1])

    async def _scan(self, script: Script, server_filter: bool) -> List[ResolvedVault]:
        """Walk every indexer page sequentially, decoding vault cells."""
        prefix = codec.VAULT_DATA_PREFIX if server_filter else None
        page_size = self.client.page_size
        vaults: List[ResolvedVault] = []
        cursor: Optional[str] = None

        while True:
            page = await self.client.search_cells_by_script(
                script, data_prefix=prefix, cursor=cursor)
            for cell in page.cells:
                vault = self._vault_from_cell(cell, check_prefix=not server_filter)
                if vault is not None:
                    vaults.append(vault)

            if len(page.cells) < page_size:
                break
            if not page.next_cursor or page.next_cursor == cursor:
                # A cursor that does not advance would repeat the same page
                break
            cursor = page.next_cursor

        return vaults

    def _vault_from_cell(self, cell: IndexedCell, check_prefix: bool) -> Optional[ResolvedVault]:
        data = hex_to_bytes(cell.output_data)
        if data is None:
            return None
        if check_prefix and not codec.is_vault_cell(data):
            return None
        payload = codec.decode(data)
        if payload is None:
            self.metrics.inc_counter(MetricNames.CELLS_SKIPPED)
            self.logger.debug(f'skipping undecodable vault-prefixed cell {cell.out_point}')
            return None
        # The indexer only returns unspent cells
        return ResolvedVault(
            out_point=cell.out_point,
            capacity=cell.capacity,
            receiving_script=cell.lock,
            payload=payload,
            chain_status=ChainStatus.COMMITTED,
            is_live=True,
            block_number=cell.block_number,
        )

    # ========================================================================
    # Single vault
    # ========================================================================

    async def resolve_vault_by_out_point(self, tx_hash: str, index: int) -> Optional[ResolvedVault]:
        """
        Rebuild one vault from the transaction that created it.

        Returns None when the transaction is unknown, the output does not
        exist, or its data is not a vault payload.
        """
        if index < 0:
            return None
        tx = await self.client.get_transaction(tx_hash)
        if tx is None:
            return None
        if index >= len(tx.outputs) or index >= len(tx.outputs_data):
            return None

        payload = codec.decode_hex(tx.outputs_data[index])
        if payload is None:
            return None

        output = tx.outputs[index]
        try:
            capacity = hex_to_int(output['capacity'])
            lock = Script.from_rpc(output['lock'])
        except (KeyError, TypeError, ValueError) as e:
            raise TransportError(f'get_transaction: malformed output {index}: {e}') from e

        out_point = OutPoint(tx_hash, index)
        is_live = False
        # Only a committed output can be live; the status alone cannot tell
        # whether it was spent later.
        if tx.status == ChainStatus.COMMITTED:
            is_live = await self.client.is_cell_live(out_point)

        self.metrics.inc_counter(MetricNames.VAULTS_RESOLVED, labels={'status': tx.status})
        return ResolvedVault(
            out_point=out_point,
            capacity=capacity,
            receiving_script=lock,
            payload=payload,
            chain_status=tx.status,
            is_live=is_live,
            block_number=tx.block_number,
        )

    async def resolve(self, out_point: OutPoint) -> Optional[ResolvedVault]:
        return await self.resolve_vault_by_out_point(out_point.tx_hash, out_point.index)

    # Verifying a vault someone shared is the same read as resolving it
    verify_vault = resolve_vault_by_out_point
