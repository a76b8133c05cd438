import secrets
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from .errors import ErrorCode, LedgerServiceError
from .logging_config import setup_logging
from .models import (
    ApplyReferralRequest,
    LedgerHistoryResponse,
    PlatformStats,
    ReferralInfo,
    RegisterRequest,
    RewardItem,
    UserAccount,
    UserBalance,
    WithdrawalReceipt,
    WithdrawalRecord,
    WithdrawalRequest,
    WithdrawalStatusUpdate,
)
from .service import LedgerService

ERROR_STATUS = {
    ErrorCode.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    ErrorCode.INVALID_REQUEST: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.INSUFFICIENT_BALANCE: status.HTTP_400_BAD_REQUEST,
    ErrorCode.OUT_OF_STOCK: status.HTTP_409_CONFLICT,
    ErrorCode.COOLDOWN_ACTIVE: status.HTTP_403_FORBIDDEN,
    ErrorCode.INVALID_STATE_TRANSITION: status.HTTP_409_CONFLICT,
}


def client_address(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Principal already verified by the identity layer in front of this API."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return x_user_id


def create_app(ledger_service: Optional[LedgerService] = None) -> FastAPI:
    ledger_service = ledger_service or LedgerService()
    settings = ledger_service.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.logging.configure:
            setup_logging(settings.logging.level, settings.logging.json_logs)
        ledger_service.init_schema()
        yield
        ledger_service.close()

    app = FastAPI(
        title="LootLedger API",
        description="Points ledger with idempotent partner postbacks, referrals and withdrawals",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.ledger_service = ledger_service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError):
        return JSONResponse(
            status_code=ERROR_STATUS.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
            content=exc.to_dict(),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "code": ErrorCode.INVALID_REQUEST.value,
                "error": "Missing or invalid parameters",
                "fields": sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")}),
            },
        )

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception):
        logger.opt(exception=exc).error("Unhandled error on {} {}", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "code": ErrorCode.INTERNAL_ERROR.value, "error": "Internal server error"},
        )

    def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
        expected = settings.admin.token
        if expected is None or not x_admin_token or not secrets.compare_digest(
            x_admin_token.encode("utf-8"), expected.get_secret_value().encode("utf-8")
        ):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "lootledger"}

    @app.get("/api/postback/lootably", tags=["Postbacks"])
    def lootably_postback(request: Request):
        result = ledger_service.handle_postback(dict(request.query_params), client_address(request))
        body = {"success": True, **result.model_dump(mode="json")}
        if result.already_processed:
            body["code"] = ErrorCode.ALREADY_PROCESSED.value
            body["message"] = "Transaction already processed"
        return body

    @app.get("/api/rewards", response_model=list[RewardItem], tags=["Rewards"])
    def list_rewards(category: Optional[str] = None) -> list[RewardItem]:
        return ledger_service.catalog.available(category)

    @app.post("/api/users/register", response_model=UserAccount, tags=["Users"])
    def register_user(
        body: RegisterRequest,
        request: Request,
        response: Response,
        user_id: str = Depends(current_user_id),
    ) -> UserAccount:
        account, created = ledger_service.accounts.register(
            user_id,
            client_address(request),
            email=body.email,
            display_name=body.display_name,
            referral_code=body.referral_code,
        )
        response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
        return account

    @app.get("/api/user/balance", response_model=UserBalance, tags=["Users"])
    def get_balance(user_id: str = Depends(current_user_id)) -> UserBalance:
        return ledger_service.accounts.balance_summary(user_id)

    @app.get("/api/user/transactions", response_model=LedgerHistoryResponse, tags=["Users"])
    def get_transactions(
        limit: int = 50,
        offset: int = 0,
        user_id: str = Depends(current_user_id),
    ) -> LedgerHistoryResponse:
        return ledger_service.accounts.transactions(user_id, limit, offset)

    @app.get("/api/user/withdrawals", response_model=list[WithdrawalRecord], tags=["Withdrawals"])
    def get_withdrawals(user_id: str = Depends(current_user_id)) -> list[WithdrawalRecord]:
        return ledger_service.withdrawals.list_withdrawals(user_id)

    @app.post("/api/withdraw", response_model=WithdrawalReceipt, tags=["Withdrawals"])
    def withdraw(body: WithdrawalRequest, user_id: str = Depends(current_user_id)) -> WithdrawalReceipt:
        return ledger_service.request_withdrawal(user_id, body.reward_id, body.delivery_info)

    @app.get("/api/user/referral", response_model=ReferralInfo, tags=["Referrals"])
    def get_referral(user_id: str = Depends(current_user_id)) -> ReferralInfo:
        return ledger_service.referral_info(user_id)

    @app.post("/api/user/apply-referral", tags=["Referrals"])
    def apply_referral(
        body: ApplyReferralRequest,
        request: Request,
        user_id: str = Depends(current_user_id),
    ):
        referrer_name = ledger_service.apply_referral(user_id, body.referral_code, client_address(request))
        return {"success": True, "referrer_name": referrer_name or "your referrer"}

    @app.get("/api/admin/stats", response_model=PlatformStats, tags=["Admin"], dependencies=[Depends(require_admin)])
    def admin_stats() -> PlatformStats:
        return ledger_service.accounts.platform_stats()

    @app.post(
        "/api/admin/withdrawals/{withdrawal_id}/status",
        response_model=WithdrawalRecord,
        tags=["Admin"],
        dependencies=[Depends(require_admin)],
    )
    def admin_update_withdrawal(withdrawal_id: int, body: WithdrawalStatusUpdate) -> WithdrawalRecord:
        return ledger_service.update_withdrawal_status(withdrawal_id, body.status, body.admin_notes)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
