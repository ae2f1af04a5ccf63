"""
JSON-RPC client for a CKB node and its indexer.

A thin request/response wrapper: one HTTP POST per call, no retries and no
backoff. Transport problems (unreachable endpoint, timeout, non-2xx status,
malformed JSON or envelope) raise ``TransportError``; a JSON-RPC ``error``
object raises ``RPCError``. Callers decide whether a fallback applies.

Methods used:

    node     get_tip_header, get_transaction, get_live_cell
    indexer  get_cells
"""

import asyncio
import itertools
import json
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

import aiohttp

from inheritvault.lib import util
from inheritvault.lib.util import hex_to_int
from inheritvault.lib.vault import ChainStatus, OutPoint, Script, TipHeader
from inheritvault.server.metrics import MetricNames, get_metrics

DEFAULT_PAGE_SIZE = 100
DEFAULT_TIMEOUT = 30.0


class ChainQueryError(Exception):
    """Base class for chain query failures."""


class TransportError(ChainQueryError):
    """The endpoint could not be reached or answered with garbage."""


class RPCError(ChainQueryError):
    """The endpoint answered with a JSON-RPC error object."""

    def __init__(self, method: str, code, message: str):
        super().__init__(f'{method}: RPC error {code}: {message}')
        self.method = method
        self.code = code
        self.message = message


@dataclass(frozen=True)
class TransactionView:
    outputs: List[Dict[str, Any]]
    outputs_data: List[str]
    status: str
    block_number: Optional[int] = None


@dataclass(frozen=True)
class IndexedCell:
    """A live cell as returned by the indexer's get_cells."""
    out_point: OutPoint
    capacity: int
    lock: Script
    output_data: str
    block_number: Optional[int] = None


@dataclass(frozen=True)
class CellPage:
    cells: List[IndexedCell]
    next_cursor: Optional[str]


class ChainQueryClient:
    """
    Async JSON-RPC 2.0 client for the node RPC and indexer endpoints.

    Usage:
        async with ChainQueryClient(rpc_url, indexer_url) as client:
            tip = await client.get_tip_header()
    """

    def __init__(self, rpc_url: str, indexer_url: str, env=None,
                 session: Optional[aiohttp.ClientSession] = None,
                 page_size: Optional[int] = None,
                 timeout: Optional[float] = None,
                 metrics=None):
        self.logger = util.class_logger(__name__, self.__class__.__name__)
        self.rpc_url = rpc_url
        self.indexer_url = indexer_url
        self.page_size = page_size or getattr(env, 'page_size', DEFAULT_PAGE_SIZE)
        self.timeout = aiohttp.ClientTimeout(
            total=timeout or getattr(env, 'rpc_timeout', DEFAULT_TIMEOUT))
        self.metrics = metrics or get_metrics()
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

    @classmethod
    def from_env(cls, env, **kwargs) -> 'ChainQueryClient':
        return cls(env.rpc_url, env.indexer_url, env=env, **kwargs)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={'Content-Type': 'application/json'})
            self._owns_session = True
        return self._session

    # ========================================================================
    # Transport
    # ========================================================================

    async def _post(self, url: str, body: Dict[str, Any]) -> Any:
        """POST one JSON body and return the decoded JSON response."""
        session = self._get_session()
        try:
            async with session.post(url, json=body, timeout=self.timeout) as resp:
                if resp.status < 200 or resp.status >= 300:
                    raise TransportError(f'{body["method"]}: HTTP {resp.status} from {url}')
                raw = await resp.read()
        except aiohttp.ClientError as e:
            raise TransportError(f'{body["method"]}: {url} unreachable: {e}') from e
        except asyncio.TimeoutError as e:
            raise TransportError(f'{body["method"]}: timed out calling {url}') from e

        try:
            return json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, ValueError, RecursionError) as e:
            raise TransportError(f'{body["method"]}: invalid JSON from {url}') from e

    async def _call(self, url: str, method: str, params: List[Any]) -> Any:
        request_id = next(self._ids)
        body = {'jsonrpc': '2.0', 'id': request_id, 'method': method, 'params': params}
        labels = {'method': method}
        self.metrics.inc_counter(MetricNames.RPC_CALLS, labels=labels)
        start = time.monotonic()
        try:
            response = await self._post(url, body)
            return self._unwrap(method, request_id, response)
        except ChainQueryError as e:
            kind = 'rpc' if isinstance(e, RPCError) else 'transport'
            self.metrics.inc_counter(MetricNames.RPC_ERRORS,
                                     labels={'method': method, 'kind': kind})
            self.logger.debug(f'{method} failed: {e}')
            raise
        finally:
            self.metrics.observe_histogram(MetricNames.RPC_DURATION,
                                           time.monotonic() - start, labels=labels)

    @staticmethod
    def _unwrap(method: str, request_id: int, response: Any) -> Any:
        if not isinstance(response, dict):
            raise TransportError(f'{method}: malformed JSON-RPC response')
        if response.get('id') != request_id:
            raise TransportError(f'{method}: response id {response.get("id")!r} '
                                 f'does not match request id {request_id}')
        error = response.get('error')
        if error is not None:
            if isinstance(error, dict):
                raise RPCError(method, error.get('code'), error.get('message') or 'RPC Error')
            raise RPCError(method, None, str(error))
        if 'result' not in response:
            raise TransportError(f'{method}: response has neither result nor error')
        return response['result']

    # ========================================================================
    # Node RPC
    # ========================================================================

    async def get_tip_header(self) -> TipHeader:
        header = await self._call(self.rpc_url, 'get_tip_header', [])
        try:
            height = hex_to_int(header['number'])
            # The node reports milliseconds
            timestamp = hex_to_int(header['timestamp']) // 1000
        except (KeyError, TypeError, ValueError) as e:
            raise TransportError(f'get_tip_header: malformed header: {e}') from e
        self.metrics.set_gauge(MetricNames.TIP_HEIGHT, height)
        return TipHeader(height=height, timestamp=timestamp)

    async def get_transaction(self, tx_hash: str) -> Optional[TransactionView]:
        """Fetch a transaction with its status. None if the node does not know it."""
        result = await self._call(self.rpc_url, 'get_transaction', [tx_hash])
        if not result:
            return None
        try:
            tx = result.get('transaction')
            if not tx:
                return None
            tx_status = result.get('tx_status') or {}
            block_number = tx_status.get('block_number')
            return TransactionView(
                outputs=list(tx.get('outputs') or []),
                outputs_data=list(tx.get('outputs_data') or []),
                status=ChainStatus.normalize(tx_status.get('status')),
                block_number=hex_to_int(block_number) if block_number else None,
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise TransportError(f'get_transaction: malformed result: {e}') from e

    async def is_cell_live(self, out_point: OutPoint, with_data: bool = False) -> bool:
        """True only when the node reports the cell live.

        Any failure reads as not live, so an unknown cell is never offered
        for claiming.
        """
        try:
            result = await self._call(self.rpc_url, 'get_live_cell',
                                      [out_point.to_rpc(), with_data])
        except ChainQueryError as e:
            self.metrics.inc_counter(MetricNames.LIVENESS_FAIL_CLOSED)
            self.logger.warning(f'liveness check for {out_point} failed, '
                                f'treating as not live: {e}')
            return False
        return isinstance(result, dict) and result.get('status') == 'live'

    # ========================================================================
    # Indexer
    # ========================================================================

    def _search_key(self, script: Script, data_prefix: Optional[str]) -> Dict[str, Any]:
        search_key: Dict[str, Any] = {
            'script': script.to_rpc(),
            'script_type': 'lock',
            'with_data': True,
        }
        if data_prefix is not None:
            search_key['filter'] = {
                'output_data': data_prefix,
                'output_data_filter_mode': 'prefix',
            }
        return search_key

    async def search_cells_by_script(self, script: Script,
                                     data_prefix: Optional[str] = None,
                                     cursor: Optional[str] = None) -> CellPage:
        """Fetch one page of live cells locked by ``script``, newest first."""
        params: List[Any] = [self._search_key(script, data_prefix), 'desc',
                             hex(self.page_size)]
        if cursor:
            params.append(cursor)
        result = await self._call(self.indexer_url, 'get_cells', params)
        try:
            objects = result.get('objects') or []
            cells = [self._parse_cell(obj) for obj in objects]
            return CellPage(cells=cells, next_cursor=result.get('last_cursor'))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise TransportError(f'get_cells: malformed result: {e}') from e

    @staticmethod
    def _parse_cell(obj: Dict[str, Any]) -> IndexedCell:
        output = obj['output']
        out_point = obj['out_point']
        block_number = obj.get('block_number')
        return IndexedCell(
            out_point=OutPoint(out_point['tx_hash'], hex_to_int(out_point['index'])),
            capacity=hex_to_int(output['capacity']),
            lock=Script.from_rpc(output['lock']),
            output_data=obj.get('output_data') or '0x',
            block_number=hex_to_int(block_number) if block_number else None,
        )
