"""
FastAPI REST API Module

HTTP surface for the token ledger. The calling identity comes from the
`sub` claim of a bearer JWT (or, with authentication disabled, from the
X-Caller-Id header) and is handed to the runtime as ground truth.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Header, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
import jwt
import uvicorn

from . import __version__
from .config import TokenLedgerConfig, get_config
from .events import NotificationType
from .ledger import LedgerError, LedgerResult
from .logging_config import setup_logging
from .runtime import LedgerRuntime


security = HTTPBearer(auto_error=False)

ERROR_STATUS = {
    LedgerError.INSUFFICIENT_BALANCE: status.HTTP_409_CONFLICT,
    LedgerError.INSUFFICIENT_ALLOWANCE: status.HTTP_409_CONFLICT,
    LedgerError.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
}


# Request schemas
class TransferRequest(BaseModel):
    recipient: str
    amount: int = Field(..., ge=0, strict=True)


class ApproveRequest(BaseModel):
    spender: str
    amount: int = Field(..., ge=0, strict=True)


class TransferFromRequest(BaseModel):
    sender: str
    recipient: str
    amount: int = Field(..., ge=0, strict=True)


class AmountRequest(BaseModel):
    amount: int = Field(..., ge=0, strict=True)


class AuthorityRequest(BaseModel):
    new_authority: str


# Dependencies
def get_runtime(request: Request) -> LedgerRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Ledger runtime not ready")
    return runtime


def get_caller(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_caller_id: Optional[str] = Header(None)
) -> str:
    """Resolve the calling identity for this request"""
    config: TokenLedgerConfig = request.app.state.config

    if not config.auth_enabled:
        if not x_caller_id:
            raise HTTPException(status_code=401, detail="Missing X-Caller-Id header")
        return x_caller_id

    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    caller = payload.get("sub")
    if not caller:
        raise HTTPException(status_code=401, detail="Invalid token")
    return caller


def _respond(result: LedgerResult) -> dict:
    if not result.ok:
        raise HTTPException(status_code=ERROR_STATUS[result.error], detail={"error": result.error.value})
    return {
        "success": True,
        "notifications": [n.to_dict() for n in result.notifications]
    }


def create_app(
    runtime: Optional[LedgerRuntime] = None,
    config: Optional[TokenLedgerConfig] = None
) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        runtime: Ledger runtime to serve; when omitted it is loaded from
            (or deployed into) the configured storage on startup
        config: Settings; the global configuration by default
    """
    config = config or get_config()
    setup_logging(config.log_level, fmt=config.log_format, log_file=config.log_file)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.runtime is None
        if owned:
            app.state.runtime = LedgerRuntime.from_config(config)
        yield
        if owned:
            app.state.runtime.storage.close()

    app = FastAPI(
        title="Token Ledger API",
        description="Fungible-token ledger with allowances and single-authority minting",
        version=__version__,
        lifespan=lifespan
    )
    app.state.config = config
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "token_ledger_api", "version": __version__}

    @app.get("/")
    async def get_api_info():
        return {
            "name": "Token Ledger API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "supply": "/supply",
                "authority": "/authority",
                "balances": "/balances/{account}",
                "allowances": "/allowances/{owner}/{spender}",
                "notifications": "/notifications",
            }
        }

    # Queries

    @app.get("/supply")
    def get_total_supply(runtime: LedgerRuntime = Depends(get_runtime)):
        return {"total_supply": runtime.total_supply()}

    @app.get("/authority")
    def get_current_authority(runtime: LedgerRuntime = Depends(get_runtime)):
        return {"authority": runtime.current_authority()}

    @app.get("/balances/{account}")
    def get_balance(account: str, runtime: LedgerRuntime = Depends(get_runtime)):
        return {"account": account, "balance": runtime.balance_of(account)}

    @app.get("/allowances/{owner}/{spender}")
    def get_allowance(owner: str, spender: str, runtime: LedgerRuntime = Depends(get_runtime)):
        return {"owner": owner, "spender": spender, "allowance": runtime.allowance(owner, spender)}

    @app.get("/notifications")
    def get_notifications(
        event_type: Optional[str] = None,
        sender: Optional[str] = None,
        recipient: Optional[str] = None,
        owner: Optional[str] = None,
        spender: Optional[str] = None,
        runtime: LedgerRuntime = Depends(get_runtime)
    ):
        """
        Search the notification log

        An empty topic value (``?sender=``) matches the absent side of a
        mint-style or burn-style transfer.
        """
        notification_type = None
        if event_type:
            try:
                notification_type = NotificationType(f"token.{event_type}")
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Unknown event type: {event_type}")

        topics = {
            key: value or None
            for key, value in (("sender", sender), ("recipient", recipient),
                               ("owner", owner), ("spender", spender))
            if value is not None
        }
        notifications = runtime.find_notifications(notification_type, **topics)
        return {"notifications": [n.to_dict() for n in notifications]}

    # Mutations

    @app.post("/transfer")
    def transfer(
        request: TransferRequest,
        caller: str = Depends(get_caller),
        runtime: LedgerRuntime = Depends(get_runtime)
    ):
        return _respond(runtime.transfer(caller, request.recipient, request.amount))

    @app.post("/approve")
    def approve(
        request: ApproveRequest,
        caller: str = Depends(get_caller),
        runtime: LedgerRuntime = Depends(get_runtime)
    ):
        return _respond(runtime.approve(caller, request.spender, request.amount))

    @app.post("/transfer-from")
    def transfer_from(
        request: TransferFromRequest,
        caller: str = Depends(get_caller),
        runtime: LedgerRuntime = Depends(get_runtime)
    ):
        return _respond(runtime.transfer_from(caller, request.sender, request.recipient, request.amount))

    @app.post("/mint")
    def mint(
        request: AmountRequest,
        caller: str = Depends(get_caller),
        runtime: LedgerRuntime = Depends(get_runtime)
    ):
        return _respond(runtime.mint(caller, request.amount))

    @app.post("/burn")
    def burn(
        request: AmountRequest,
        caller: str = Depends(get_caller),
        runtime: LedgerRuntime = Depends(get_runtime)
    ):
        return _respond(runtime.burn(caller, request.amount))

    @app.post("/authority")
    def transfer_authority(
        request: AuthorityRequest,
        caller: str = Depends(get_caller),
        runtime: LedgerRuntime = Depends(get_runtime)
    ):
        return _respond(runtime.transfer_authority(caller, request.new_authority))

    return app


def run_server(host: str = "0.0.0.0", port: int = 8091, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "token_ledger.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
