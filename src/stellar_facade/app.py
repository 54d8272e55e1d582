import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from stellar_facade.config import cfg
from stellar_facade.errors import (
    AccountConflict,
    AccountNotFound,
    BuildError,
    FacadeError,
    GatewayTimeout,
    GatewayUnavailable,
    InvalidAccountName,
    NotFound,
    RegistryWriteConflict,
    SubmissionRejected,
)
from stellar_facade.facade import StellarFacade
from stellar_facade.gateway import FriendbotFunder, HorizonGateway
from stellar_facade.logging_config import setup_logging
from stellar_facade.registry import open_registry

setup_logging()
log = logging.getLogger("stellar_facade.app")

ASSET_CODE = cfg["assets"]["code"]
TRUST_LIMIT = cfg["assets"]["trust_limit"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    to = cfg["timeout"]
    gateway = HorizonGateway(cfg["horizon"]["url"], timeout=to["rpc"], submit_timeout=to["submit"])
    funder = FriendbotFunder(cfg["friendbot"]["url"], timeout=to["submit"])
    registry = open_registry(cfg)

    app.state.facade = StellarFacade(cfg, registry, gateway, funder=funder)
    log.info("Facade ready against %s", cfg["horizon"]["url"])
    try:
        yield
    finally:
        log.info("Shutting down...")
        await gateway.aclose()
        await funder.aclose()


app = FastAPI(
    title="Stellar Facade",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Accounts", "description": "Create, fund and inspect named accounts"},
        {"name": "Assets", "description": "Issue and transfer assets"},
        {"name": "Trustlines", "description": "Open, check and clear trustlines"},
    ],
)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

r_account = APIRouter(prefix="/account", tags=["Accounts"])
r_asset = APIRouter(prefix="/asset", tags=["Assets"])
r_native = APIRouter(prefix="/native", tags=["Assets"])
r_trustline = APIRouter(prefix="/trustline", tags=["Trustlines"])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AccountReq(CamelModel):
    account_name: str


class FromToReq(CamelModel):
    from_account_name: str
    to_account_name: str


class CreateAssetReq(CamelModel):
    account_name: str
    asset_code: str = ASSET_CODE


class AssetTransferReq(CamelModel):
    asset_account_name: str
    from_account_name: str
    to_account_name: str
    amount: str


class ThirdPartyTransferReq(AssetTransferReq):
    third_party_account_name: str


class XdrTransferReq(CamelModel):
    xdr_transaction: str
    third_party_account_name: str


class NativeTransferReq(CamelModel):
    from_account_name: str
    to_account_name: str
    amount: str


# Domain error -> HTTP status. Most specific classes first.
STATUS_FOR: list[tuple[type[FacadeError], int]] = [
    (NotFound, 404),
    (AccountNotFound, 404),
    (InvalidAccountName, 400),
    (BuildError, 400),
    (SubmissionRejected, 400),
    (RegistryWriteConflict, 409),
    (AccountConflict, 409),
    (GatewayTimeout, 504),
    (GatewayUnavailable, 502),
]


@app.exception_handler(FacadeError)
async def facade_error_handler(request: Request, exc: FacadeError):
    status = next((code for cls, code in STATUS_FOR if isinstance(exc, cls)), 500)
    body = {"error": exc.__class__.__name__, "detail": str(exc)}
    if isinstance(exc, SubmissionRejected):
        body["result_codes"] = exc.result_codes
    log.warning("%s %s -> %s %s", request.method, request.url.path, status, exc)
    return JSONResponse(status_code=status, content=body)


def facade() -> StellarFacade:
    return app.state.facade


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/accounts/all", tags=["Accounts"])
async def accounts_all():
    return await facade().list_account_balances()


@r_account.post("/create")
async def account_create(req: AccountReq):
    return await facade().create_account(req.account_name)


@r_account.post("/configure")
async def account_configure(req: AccountReq):
    """Turn the account into an issuer: auth required, revocable and immutable."""
    return await facade().configure_issuer(req.account_name)


@r_account.get("/get/{account_name}")
async def account_get(account_name: str):
    return await facade().get_account(account_name)


@r_account.get("/fund/friendbot/{account_name}")
async def account_fund_friendbot(account_name: str):
    return await facade().fund_via_friendbot(account_name)


@r_account.get("/load/{account_name}")
async def account_load(account_name: str):
    return await facade().load_account(account_name)


@r_account.post("/fund")
async def account_fund(req: FromToReq):
    return await facade().fund_account(req.from_account_name, req.to_account_name)


@r_asset.post("/create")
async def asset_create(req: CreateAssetReq):
    return await facade().create_asset(req.asset_code, req.account_name)


@r_asset.post("/transfer")
async def asset_transfer(req: AssetTransferReq):
    return await facade().transfer_asset(
        req.asset_account_name, req.from_account_name, req.to_account_name, ASSET_CODE, req.amount
    )


@r_asset.post("/transfer/prepaid")
async def asset_transfer_prepaid(req: AssetTransferReq):
    """Recipient pays the transaction fee."""
    return await facade().prepaid_transfer_asset(
        req.asset_account_name, req.from_account_name, req.to_account_name, ASSET_CODE, req.amount
    )


@r_asset.post("/transfer/thirdpartypaid")
async def asset_transfer_third_party(req: ThirdPartyTransferReq):
    return await facade().third_party_prepaid_transfer(
        req.asset_account_name,
        req.third_party_account_name,
        req.from_account_name,
        req.to_account_name,
        ASSET_CODE,
        req.amount,
    )


@r_asset.post("/transfer/xdr")
async def asset_transfer_xdr(req: XdrTransferReq):
    """Sign a partially signed envelope as the named fee payer and submit it."""
    return await facade().continue_transfer(req.xdr_transaction, req.third_party_account_name)


@r_native.post("/transfer")
async def native_transfer(req: NativeTransferReq):
    return await facade().transfer_native(req.from_account_name, req.to_account_name, req.amount)


@r_trustline.get("/check/{account_name}")
async def trustline_check(account_name: str):
    return await facade().check_trustline(account_name, ASSET_CODE)


@r_trustline.post("/create")
async def trustline_create(req: FromToReq):
    return await facade().create_trustline(req.from_account_name, req.to_account_name, ASSET_CODE, TRUST_LIMIT)


@r_trustline.post("/create/prepaid")
async def trustline_create_prepaid(req: FromToReq):
    return await facade().create_prepaid_trustline(
        req.from_account_name, req.to_account_name, ASSET_CODE, TRUST_LIMIT
    )


@r_trustline.post("/clear")
async def trustline_clear(req: FromToReq):
    return await facade().clear_trustline(req.from_account_name, req.to_account_name, ASSET_CODE)


app.include_router(r_account)
app.include_router(r_asset)
app.include_router(r_native)
app.include_router(r_trustline)
