"""
FastAPI REST API for InheritVault

Read-only HTTP view of vault state. Every response is resolved fresh from the
node and indexer; nothing here is cached.
"""

from contextlib import asynccontextmanager
from typing import Optional, List
import os
import time

from fastapi import FastAPI, HTTPException, Query, Path, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from inheritvault.lib import util
from inheritvault.lib.address import parse_address
from inheritvault.lib.vault import OutPoint, ResolvedVault, Script
from inheritvault.server.chain_client import ChainQueryClient, ChainQueryError
from inheritvault.server.claims import (
    VaultService, InvalidVaultRequest, NotBeneficiary, QueryUnavailable,
    VaultNotFound, VaultNotUnlockable,
)
from inheritvault.server.env import Env
from inheritvault.server.metrics import get_metrics, init_metrics
from inheritvault.server.vault_resolver import VaultResolver

logger = util.class_logger(__name__, 'RestAPI')

# Global references (set by set_resolver or on startup)
_resolver: Optional[VaultResolver] = None
_env = None
_metrics = None
_owned_client: Optional[ChainQueryClient] = None
_start_time = time.time()


def set_resolver(resolver, env=None, metrics=None):
    """Wire the resolver the endpoints read from."""
    global _resolver, _env, _metrics
    _resolver = resolver
    _env = env
    _metrics = metrics


@asynccontextmanager
async def _lifespan(app: FastAPI):
    global _owned_client
    if _resolver is None:
        env = Env()
        util.setup_logging(env.log_level)
        metrics = init_metrics(env)
        _owned_client = ChainQueryClient.from_env(env, metrics=metrics)
        set_resolver(VaultResolver(_owned_client, env=env, metrics=metrics), env, metrics)
        logger.info(f'serving {env.network} vaults from {env.rpc_url}')
    try:
        yield
    finally:
        if _owned_client is not None:
            await _owned_client.close()


app = FastAPI(
    title="InheritVault REST API",
    description="Read-only API for CKB inheritance vaults",
    version="0.3.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=_lifespan,
)

_allowed_origins_raw = os.getenv('ALLOWED_ORIGINS', '').strip()
_allowed_origins = [o.strip() for o in _allowed_origins_raw.split(',') if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=False,
    allow_methods=["GET"],
    allow_headers=["*"],
)


def _required_api_key() -> str:
    if _env is not None:
        return getattr(_env, 'rest_api_key', '') or ''
    return os.getenv('REST_API_KEY', '').strip()


@app.middleware("http")
async def _security_middleware(request: Request, call_next):
    if request.url.path.startswith('/health'):
        return await call_next(request)
    required_key = _required_api_key()
    if required_key and request.headers.get('x-api-key') != required_key:
        return JSONResponse(status_code=401, content={'detail': 'Unauthorized'})
    return await call_next(request)


# =============================================================================
# ERROR MAPPING
# =============================================================================

@app.exception_handler(ChainQueryError)
async def _chain_error_handler(request: Request, exc: ChainQueryError):
    logger.warning(f'{request.url.path}: chain query failed: {exc}')
    return JSONResponse(status_code=503, content={'detail': 'Chain query unavailable'})


@app.exception_handler(QueryUnavailable)
async def _query_unavailable_handler(request: Request, exc: QueryUnavailable):
    return JSONResponse(status_code=503, content={'detail': 'Chain query unavailable'})


@app.exception_handler(VaultNotFound)
async def _not_found_handler(request: Request, exc: VaultNotFound):
    return JSONResponse(status_code=404, content={'detail': str(exc)})


@app.exception_handler(VaultNotUnlockable)
async def _not_unlockable_handler(request: Request, exc: VaultNotUnlockable):
    return JSONResponse(status_code=409, content={'detail': str(exc), 'remaining': exc.remaining})


@app.exception_handler(NotBeneficiary)
async def _not_beneficiary_handler(request: Request, exc: NotBeneficiary):
    return JSONResponse(status_code=403, content={'detail': str(exc)})


@app.exception_handler(InvalidVaultRequest)
async def _invalid_request_handler(request: Request, exc: InvalidVaultRequest):
    return JSONResponse(status_code=400, content={'detail': str(exc)})


def _get_resolver() -> VaultResolver:
    if _resolver is None:
        raise HTTPException(status_code=503, detail="Resolver not available")
    return _resolver


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class HealthResponse(BaseModel):
    status: str
    uptime_seconds: float
    network: Optional[str] = None


class TipResponse(BaseModel):
    height: int
    timestamp: int


class ScriptModel(BaseModel):
    code_hash: str
    hash_type: str
    args: str


class UnlockModel(BaseModel):
    type: str
    value: int


class VaultResponse(BaseModel):
    tx_hash: str
    index: int
    capacity: int
    capacity_ckb: str
    receiving_script: ScriptModel
    owner_address: str
    owner_name: Optional[str] = None
    memo: Optional[str] = None
    unlock: UnlockModel
    chain_status: str
    is_live: bool
    state: str
    block_number: Optional[int] = None
    explorer_url: Optional[str] = None


class VaultListResponse(BaseModel):
    count: int
    vaults: List[VaultResponse]


class ClaimCheckResponse(BaseModel):
    claimable: bool
    vault: VaultResponse


def _vault_response(vault: ResolvedVault) -> VaultResponse:
    data = vault.to_dict()
    if _env is not None and hasattr(_env, 'explorer_url'):
        data['explorer_url'] = _env.explorer_url(vault.out_point.tx_hash)
    return VaultResponse(**data)


def _vault_list(vaults: List[ResolvedVault]) -> VaultListResponse:
    return VaultListResponse(count=len(vaults), vaults=[_vault_response(v) for v in vaults])


class _AddressSigner:
    """Signer stand-in that only knows its address; enough for eligibility checks."""

    def __init__(self, address: str):
        self.address = address

    async def get_address(self) -> str:
        return self.address


# =============================================================================
# HEALTH & STATUS ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    return HealthResponse(
        status="healthy" if _resolver is not None else "degraded",
        uptime_seconds=round(time.time() - _start_time, 2),
        network=getattr(_env, 'network', None),
    )


@app.get("/health/live", tags=["Health"])
async def health_live():
    return {"status": "alive"}


@app.get("/tip", response_model=TipResponse, tags=["Chain"])
async def get_tip():
    """Current chain tip height and timestamp (seconds)."""
    tip = await _get_resolver().client.get_tip_header()
    return TipResponse(height=tip.height, timestamp=tip.timestamp)


# =============================================================================
# VAULTS
# =============================================================================

@app.get("/vaults/by-address/{address}", response_model=VaultListResponse, tags=["Vaults"])
async def get_vaults_by_address(address: str):
    """Live vaults whose beneficiary is ``address``."""
    try:
        vaults = await _get_resolver().enumerate_vaults_for_address(address)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid CKB address")
    return _vault_list(vaults)


@app.get("/vaults/by-script", response_model=VaultListResponse, tags=["Vaults"])
async def get_vaults_by_script(
    code_hash: str = Query(..., pattern=r'^0x[0-9a-fA-F]{64}$'),
    hash_type: str = Query(..., pattern=r'^(type|data|data1|data2)$'),
    args: str = Query(..., pattern=r'^0x([0-9a-fA-F]{2})*$'),
):
    """Live vaults locked by the given script."""
    script = Script(code_hash=code_hash, hash_type=hash_type, args=args)
    return _vault_list(await _get_resolver().enumerate_vaults_for_script(script))


@app.get("/vaults/{tx_hash}/{index}", response_model=VaultResponse, tags=["Vaults"])
async def get_vault(tx_hash: str = Path(..., pattern=r"^0x[0-9a-fA-F]{64}$"), index: int = Path(..., ge=0)):
    """Resolve one vault by outpoint, with its current state."""
    vault = await _get_resolver().resolve_vault_by_out_point(tx_hash, index)
    if vault is None:
        raise HTTPException(status_code=404, detail="Vault not found")
    return _vault_response(vault)


@app.get("/vaults/{tx_hash}/{index}/claim-check", response_model=ClaimCheckResponse,
         tags=["Vaults"])
async def check_claim(tx_hash: str = Path(..., pattern=r"^0x[0-9a-fA-F]{64}$"), index: int = Path(..., ge=0),
                      address: str = Query(..., min_length=1)):
    """Whether ``address`` could claim the vault right now."""
    if parse_address(address) is None:
        raise HTTPException(status_code=400, detail="Invalid CKB address")
    service = VaultService(_get_resolver(), env=_env)
    vault = await service.check_claim(_AddressSigner(address), OutPoint(tx_hash, index))
    return ClaimCheckResponse(claimable=True, vault=_vault_response(vault))


# =============================================================================
# METRICS
# =============================================================================

@app.get("/metrics", response_class=PlainTextResponse, tags=["Health"])
async def metrics():
    collector = _metrics or get_metrics()
    return PlainTextResponse(collector.generate_metrics(),
                             media_type='text/plain; version=0.0.4')


def create_app():
    """Factory function to create the FastAPI app."""
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
