"""
TRASHURE Ledger: API Gateway
FastAPI server exposing the recycling ledger to the mobile/web client.

  - /api/v1/auth/*          sign up / sign in / sign out (local identity provider)
  - /api/v1/scan/classify   frame -> ranked labels (remote classifier, rate limited)
  - /api/v1/scan/confirm    credit a confirmed scan (Idempotency-Key supported)
  - /api/v1/vouchers        catalog + redemption
  - /ws/*                   live account / history / leaderboard snapshots
"""

import asyncio
import base64
import binascii
import logging
import os
import re
import time
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Security,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.concurrency import run_in_threadpool

from engine.classifier import feedback_message, looks_recyclable
from engine.errors import (
    CaptureError,
    ClassificationError,
    IdentityError,
    InsufficientFundsError,
    LedgerWriteError,
    ScanRejectedError,
    TrashureError,
    UnknownAccountError,
    UnknownScanError,
    UnknownVoucherError,
)
from engine.identity import DEFAULT_JWT_SECRET, JWT_SECRET, AuthUser
from engine.models import Classification
from engine.services import STORE_BACKEND, Services

# ─── Setup ────────────────────────────────────────────────────────────────────
logging.basicConfig(level=logging.INFO)
log = logging.getLogger("trashure.api")

VERSION          = "1.0.0"
RATE_LIMIT_SCAN  = os.getenv("TRASHURE_RATE_LIMIT_SCAN", "30/minute")
HISTORY_DEFAULT  = 50
HISTORY_MAX      = 500
_SCAN_ID_RE      = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

# ─── CORS ─────────────────────────────────────────────────────────────────────
# In production, set: ALLOWED_ORIGINS=https://yourdomain.com,https://app.yourdomain.com
_raw_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173")
ALLOWED_ORIGINS: List[str] = [o.strip() for o in _raw_origins.split(",") if o.strip()]

bearer_scheme = HTTPBearer(auto_error=False)


# ─── Request Models ───────────────────────────────────────────────────────────
class SignUpRequest(BaseModel):
    email:        str
    password:     str
    display_name: Optional[str] = Field(default=None, max_length=60)


class SignInRequest(BaseModel):
    email:    str
    password: str


class ClassifyRequest(BaseModel):
    image_base64: str = Field(..., description="Captured frame, base64 (data URL prefix allowed)")


class ClassificationInput(BaseModel):
    label:      str   = Field(..., min_length=1, max_length=200)
    confidence: float = Field(..., ge=0.0, le=1.0)


class ConfirmScanRequest(BaseModel):
    classifications: List[ClassificationInput] = Field(default_factory=list)
    scan_id:         Optional[str] = Field(default=None, description="Client-generated idempotency token")


# ─── Error mapping ────────────────────────────────────────────────────────────
def _status_for(exc: TrashureError) -> int:
    if isinstance(exc, IdentityError):
        return status.HTTP_409_CONFLICT if exc.conflict else status.HTTP_401_UNAUTHORIZED
    if isinstance(exc, ScanRejectedError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, CaptureError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, InsufficientFundsError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (UnknownVoucherError, UnknownAccountError, UnknownScanError)):
        return status.HTTP_404_NOT_FOUND
    # ClassificationError, LedgerWriteError, other LedgerError
    return status.HTTP_503_SERVICE_UNAVAILABLE


async def _trashure_error_handler(request: Request, exc: TrashureError) -> JSONResponse:
    body: Dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, LedgerWriteError):
        body["retryable"] = True
        if exc.pending is not None:
            body["pending_record_id"] = exc.pending.record_id
    if isinstance(exc, InsufficientFundsError):
        body["balance"]  = exc.balance
        body["required"] = exc.required
    code = _status_for(exc)
    if code >= 500:
        log.error(f"[{request.url.path}] {type(exc).__name__}: {exc}")
    return JSONResponse(status_code=code, content=body)


def _decode_image(data: str) -> bytes:
    if "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CaptureError(f"image_base64 is not valid base64: {e}") from e


async def _stream_snapshots(websocket: WebSocket, subscribe: Callable[[Callable[[Any], None]], Callable[[], None]]):
    """Bridge a ledger subscription (sync callbacks, any thread) onto a websocket."""
    loop  = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def push(payload: Any) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, payload)

    async def _sender():
        while True:
            await websocket.send_json(await queue.get())

    async def _receiver():
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    unsubscribe = await run_in_threadpool(subscribe, push)
    tasks = {asyncio.ensure_future(_sender()), asyncio.ensure_future(_receiver())}
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            try:
                task.result()
            except (WebSocketDisconnect, RuntimeError) as e:
                log.debug(f"[WS] {websocket.url.path} closed: {e!r}")
    finally:
        unsubscribe()


# ─── App factory ──────────────────────────────────────────────────────────────
def create_app(services: Optional[Services] = None, rate_limit: str = RATE_LIMIT_SCAN) -> FastAPI:
    services = services or Services.build()
    limiter  = Limiter(key_func=get_remote_address)

    app = FastAPI(
        title="TRASHURE Ledger API",
        description="Points, coins, scan history and vouchers for the Trashure recycling app",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.limiter  = limiter
    app.state.services = services
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(TrashureError, _trashure_error_handler)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def _startup():
        if not os.getenv("TRASHURE_JWT_SECRET") or JWT_SECRET == DEFAULT_JWT_SECRET:
            log.critical(
                f"\n{'='*70}\nSECURITY WARNING: DEFAULT JWT SECRET IN USE. "
                f"Anyone can mint session tokens. Set TRASHURE_JWT_SECRET.\n{'='*70}"
            )
        log.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")
        services.start()

    @app.on_event("shutdown")
    async def _shutdown():
        services.close()

    # ── Auth ─────────────────────────────────────────────────────────────────
    def current_token(credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme)) -> str:
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
        return credentials.credentials

    def current_user(token: str = Depends(current_token)) -> AuthUser:
        return services.identity.authenticate(token)

    def _open_session(session) -> Dict[str, Any]:
        account = services.open_account(session.user)
        return {"token": session.token, "user": session.user.to_dict(), "account": account.to_dict()}

    @app.get("/health")
    async def health():
        return {
            "status":    "operational",
            "store":     type(services.store).__name__,
            "backend":   STORE_BACKEND,
            "version":   VERSION,
            "timestamp": int(time.time()),
        }

    # Every store or identity call below runs in the threadpool.
    @app.post("/api/v1/auth/signup", status_code=status.HTTP_201_CREATED)
    async def sign_up(body: SignUpRequest) -> Dict[str, Any]:
        session = await run_in_threadpool(services.identity.sign_up, body.email, body.password, body.display_name)
        return await run_in_threadpool(_open_session, session)

    @app.post("/api/v1/auth/signin")
    async def sign_in(body: SignInRequest) -> Dict[str, Any]:
        session = await run_in_threadpool(services.identity.sign_in, body.email, body.password)
        return await run_in_threadpool(_open_session, session)

    @app.post("/api/v1/auth/signout")
    async def sign_out(token: str = Depends(current_token)) -> Dict[str, Any]:
        await run_in_threadpool(services.identity.sign_out, token)
        return {"ok": True}

    @app.get("/api/v1/me")
    async def me(user: AuthUser = Depends(current_user)) -> Dict[str, Any]:
        return user.to_dict()

    # ── Scan flow ────────────────────────────────────────────────────────────
    @app.post("/api/v1/scan/classify", summary="Classify a captured frame")
    @limiter.limit(rate_limit)
    async def classify(
        request: Request,                           # required by slowapi
        body:    ClassifyRequest,
        user:    AuthUser = Depends(current_user),
    ) -> Dict[str, Any]:
        image_bytes = _decode_image(body.image_base64)
        log.info(f"[SCAN] {user.user_id}: frame received, {len(image_bytes):,} bytes")
        results = await run_in_threadpool(services.classifier.classify, image_bytes)
        return {
            "predictions": [c.to_dict() for c in results],
            "recyclable":  looks_recyclable(results[0].label),
            "message":     feedback_message(results),
        }

    def _confirm(user_id: str, classifications: List[Classification], scan_id: Optional[str]) -> Dict[str, Any]:
        record  = services.rewards.confirm_scan(user_id, classifications, scan_id=scan_id)
        account = services.accounts.get(user_id)
        return {"record": record.to_dict(), "account": account.to_dict() if account else None}

    @app.post("/api/v1/scan/confirm", summary="Credit a confirmed scan")
    @limiter.limit(rate_limit)
    async def confirm_scan(
        request:         Request,
        body:            ConfirmScanRequest,
        idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
        user:            AuthUser = Depends(current_user),
    ) -> Dict[str, Any]:
        scan_id = body.scan_id or idempotency_key
        if scan_id is not None and not _SCAN_ID_RE.match(scan_id):
            raise HTTPException(status_code=422, detail="scan_id must be 1-64 chars of [A-Za-z0-9_-]")
        classifications = [Classification(c.label, c.confidence) for c in body.classifications]
        return await run_in_threadpool(_confirm, user.user_id, classifications, scan_id)

    @app.post("/api/v1/scan/{record_id}/complete", summary="Retry the history write of a credited scan")
    async def complete_scan(record_id: str, user: AuthUser = Depends(current_user)) -> Dict[str, Any]:
        record = await run_in_threadpool(services.rewards.complete_scan, user.user_id, record_id)
        return {"record": record.to_dict()}

    # ── Ledger reads ─────────────────────────────────────────────────────────
    def _account_with_rank(user_id: str) -> Dict[str, Any]:
        account = services.accounts.get(user_id)
        if account is None:
            raise UnknownAccountError(user_id)
        return {**account.to_dict(), "rank": services.leaderboard.rank_of(user_id)}

    @app.get("/api/v1/account")
    async def get_account(user: AuthUser = Depends(current_user)) -> Dict[str, Any]:
        return await run_in_threadpool(_account_with_rank, user.user_id)

    @app.get("/api/v1/history")
    async def get_history(
        limit: int = Query(HISTORY_DEFAULT, ge=1, le=HISTORY_MAX),
        user:  AuthUser = Depends(current_user),
    ) -> Dict[str, Any]:
        items = await run_in_threadpool(services.history.recent, user.user_id, limit)
        return {"count": len(items), "items": [r.to_dict() for r in items]}

    @app.get("/api/v1/leaderboard")
    async def get_leaderboard() -> Dict[str, Any]:
        entries = await run_in_threadpool(services.leaderboard.top)
        return {"items": [e.to_dict() for e in entries]}

    @app.get("/api/v1/consistency", summary="Compare account counters with scan history")
    async def get_consistency(user: AuthUser = Depends(current_user)) -> Dict[str, Any]:
        report = await run_in_threadpool(services.rewards.check_consistency, user.user_id)
        return report.to_dict()

    # ── Vouchers ─────────────────────────────────────────────────────────────
    @app.get("/api/v1/vouchers")
    async def list_vouchers() -> Dict[str, Any]:
        return {"items": [v.to_dict() for v in services.vouchers.catalog()]}

    @app.post("/api/v1/vouchers/{voucher_id}/redeem")
    async def redeem_voucher(voucher_id: str, user: AuthUser = Depends(current_user)) -> Dict[str, Any]:
        result = await run_in_threadpool(services.vouchers.redeem, user.user_id, voucher_id)
        return result.to_dict()

    # ── Live streams ─────────────────────────────────────────────────────────
    async def _ws_user(websocket: WebSocket, token: Optional[str]) -> Optional[AuthUser]:
        try:
            return await run_in_threadpool(services.identity.authenticate, token)
        except IdentityError as e:
            log.info(f"[WS] Rejected {websocket.url.path}: {e}")
            await websocket.close(code=1008)
            return None

    @app.websocket("/ws/leaderboard")
    async def ws_leaderboard(websocket: WebSocket):
        await websocket.accept()
        await _stream_snapshots(
            websocket,
            lambda push: services.leaderboard.subscribe(
                lambda entries: push({"items": [e.to_dict() for e in entries]})
            ),
        )

    @app.websocket("/ws/account")
    async def ws_account(websocket: WebSocket, token: Optional[str] = Query(default=None)):
        user = await _ws_user(websocket, token)
        if user is None:
            return
        await websocket.accept()
        await _stream_snapshots(
            websocket,
            lambda push: services.accounts.subscribe(
                user.user_id, lambda account: push(account.to_dict() if account else None)
            ),
        )

    @app.websocket("/ws/history")
    async def ws_history(
        websocket: WebSocket,
        token:     Optional[str] = Query(default=None),
        limit:     int = Query(HISTORY_DEFAULT, ge=1, le=HISTORY_MAX),
    ):
        user = await _ws_user(websocket, token)
        if user is None:
            return
        await websocket.accept()
        await _stream_snapshots(
            websocket,
            lambda push: services.history.stream_recent(
                user.user_id, limit, lambda records: push({"items": [r.to_dict() for r in records]})
            ),
        )

    return app


app = create_app()
