import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import ConfigProvider, Settings, configure_logging
from .database import Database
from .errors import LedgerServiceError, PersistenceFailure
from .models import (
    AdminDeleteSettlementAccountRequest,
    AdminSaveSettlementAccountRequest,
    BatchApproveRequest,
    DeleteSettlementAccountRequest,
    RecordActionRequest,
    RefundQueryRequest,
    RefundRequest,
    SaveSettlementAccountRequest,
    SettlementMethods,
    SettlementOptions,
    SettlementQuery,
    SettlementStatus,
    SettleType,
    SystemConfigRequest,
    WithdrawApplyRequest,
)
from .notifier import Notifier
from .plugins import PluginRegistry
from .service import Services, build_services

logger = logging.getLogger(__name__)


def envelope(data: Any = None, msg: Optional[str] = None, code: int = 0) -> dict:
    body: dict = {"code": code}
    if msg:
        body["msg"] = msg
    if data is not None:
        body["data"] = _jsonable(data)
    return body


def _jsonable(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    if isinstance(data, list):
        return [_jsonable(item) for item in data]
    return data


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_merchant(x_merchant_id: int = Header(...)) -> int:
    return x_merchant_id


def current_admin(x_admin_id: str = Header(...)) -> str:
    return x_admin_id


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    plugins: Optional[PluginRegistry] = None,
    notifier: Optional[Notifier] = None,
    config: Optional[ConfigProvider] = None,
    clock: Callable[[], datetime] = datetime.now,
    root_path: str = "",
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.services.close()

    app = FastAPI(
        title="Merchant Ledger API",
        description="Merchant balance ledger, refunds and withdrawal settlement",
        version="1.0.0",
        root_path=root_path,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = build_services(
        settings, database=database, plugins=plugins, notifier=notifier, config=config, clock=clock
    )

    @app.exception_handler(PersistenceFailure)
    async def persistence_failure_handler(request: Request, exc: PersistenceFailure):
        logger.error(f"{request.method} {request.url.path} failed on persistence: {exc.message}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=envelope(msg=PersistenceFailure.__doc__, code=-1),
        )

    @app.exception_handler(LedgerServiceError)
    async def business_error_handler(request: Request, exc: LedgerServiceError):
        return JSONResponse(content=envelope(msg=exc.message, code=-1))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "header"))
        msg = f"Invalid parameter {field}: {first.get('msg', 'invalid')}" if field else "Invalid request"
        return JSONResponse(content=envelope(msg=msg, code=-1))

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "merchant-ledger"}

    # -- merchant: balance ----------------------------------------------------

    @app.get("/merchant/balance", tags=["Balance"])
    def get_balance(merchant_id: int = Depends(current_merchant), services: Services = Depends(get_services)):
        return envelope(services.balance(merchant_id))

    @app.get("/merchant/balance/logs", tags=["Balance"])
    def get_balance_logs(
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
        merchant_id: int = Depends(current_merchant),
        services: Services = Depends(get_services),
    ):
        return envelope(services.history(merchant_id, limit, offset))

    # -- merchant: refunds ----------------------------------------------------

    @app.post("/merchant/refund", tags=["Refunds"])
    def apply_refund(
        request: RefundRequest,
        merchant_id: int = Depends(current_merchant),
        services: Services = Depends(get_services),
    ):
        result = services.refunds.refund(merchant_id, request.trade_no, request.money, request.reason)
        return envelope(result, msg="Refund succeeded")

    @app.post("/merchant/refund/query", tags=["Refunds"])
    def query_refund(
        request: RefundQueryRequest,
        merchant_id: int = Depends(current_merchant),
        services: Services = Depends(get_services),
    ):
        return envelope(services.refunds.quote(merchant_id, request.trade_no))

    # -- merchant: withdrawals ------------------------------------------------

    @app.get("/merchant/withdraw/info", tags=["Withdrawals"])
    def withdraw_info(merchant_id: int = Depends(current_merchant), services: Services = Depends(get_services)):
        return envelope(services.withdrawals.get_withdrawable_info(merchant_id))

    @app.post("/merchant/withdraw/apply", tags=["Withdrawals"])
    def withdraw_apply(
        request: WithdrawApplyRequest,
        merchant_id: int = Depends(current_merchant),
        services: Services = Depends(get_services),
    ):
        receipt = services.withdrawals.apply(merchant_id, request.amount, request.settlement_id)
        return envelope(receipt, msg="Withdrawal request submitted")

    @app.get("/merchant/withdraw/records", tags=["Withdrawals"])
    def merchant_withdraw_records(
        status_filter: Optional[SettlementStatus] = Query(None, alias="status"),
        page: int = Query(1, ge=1),
        page_size: int = Query(20, alias="pageSize", ge=1, le=100),
        merchant_id: int = Depends(current_merchant),
        services: Services = Depends(get_services),
    ):
        query = SettlementQuery(merchant_id=merchant_id, status=status_filter, page=page, page_size=page_size)
        return envelope(services.withdrawals.list_records(query))

    @app.post("/merchant/withdraw/cancel", tags=["Withdrawals"])
    def withdraw_cancel(
        request: RecordActionRequest,
        merchant_id: int = Depends(current_merchant),
        services: Services = Depends(get_services),
    ):
        services.withdrawals.cancel(merchant_id, request.id)
        return envelope(msg="Cancelled")

    # -- merchant: settlement accounts ----------------------------------------

    @app.get("/merchant/settlement/options", tags=["Settlement accounts"])
    def merchant_settlement_methods(
        merchant_id: int = Depends(current_merchant), services: Services = Depends(get_services)
    ):
        return envelope(services.accounts.get_methods())

    @app.get("/merchant/settlement/accounts", tags=["Settlement accounts"])
    def list_settlement_accounts(
        merchant_id: int = Depends(current_merchant), services: Services = Depends(get_services)
    ):
        return envelope(services.accounts.list_accounts(merchant_id))

    @app.post("/merchant/settlement/save", tags=["Settlement accounts"])
    def save_settlement_account(
        request: SaveSettlementAccountRequest,
        merchant_id: int = Depends(current_merchant),
        services: Services = Depends(get_services),
    ):
        return envelope(services.accounts.save_account(merchant_id, request), msg="Saved")

    @app.post("/merchant/settlement/delete", tags=["Settlement accounts"])
    def delete_settlement_account(
        request: DeleteSettlementAccountRequest,
        merchant_id: int = Depends(current_merchant),
        services: Services = Depends(get_services),
    ):
        services.accounts.delete_account(merchant_id, request.id)
        return envelope(msg="Deleted")

    # -- admin ----------------------------------------------------------------

    @app.get("/admin/withdraw/records", tags=["Admin"])
    def admin_withdraw_records(
        merchant_id: Optional[int] = Query(None),
        status_filter: Optional[SettlementStatus] = Query(None, alias="status"),
        settle_type: Optional[SettleType] = Query(None),
        page: int = Query(1, ge=1),
        page_size: int = Query(20, alias="pageSize", ge=1, le=100),
        admin_id: str = Depends(current_admin),
        services: Services = Depends(get_services),
    ):
        query = SettlementQuery(
            merchant_id=merchant_id, status=status_filter, settle_type=settle_type, page=page, page_size=page_size
        )
        return envelope(services.withdrawals.list_records(query))

    @app.post("/admin/withdraw/approve", tags=["Admin"])
    def admin_approve(
        request: RecordActionRequest,
        admin_id: str = Depends(current_admin),
        services: Services = Depends(get_services),
    ):
        services.withdrawals.approve(request.id, admin_id, request.remark)
        return envelope(msg="Approved")

    @app.post("/admin/withdraw/reject", tags=["Admin"])
    def admin_reject(
        request: RecordActionRequest,
        admin_id: str = Depends(current_admin),
        services: Services = Depends(get_services),
    ):
        services.withdrawals.reject(request.id, admin_id, request.remark)
        return envelope(msg="Rejected, balance returned")

    @app.post("/admin/withdraw/batch-approve", tags=["Admin"])
    def admin_batch_approve(
        request: BatchApproveRequest,
        admin_id: str = Depends(current_admin),
        services: Services = Depends(get_services),
    ):
        result = services.withdrawals.batch_approve(request.ids, admin_id)
        return envelope(result, msg=f"{result.success} succeeded, {result.fail} failed")

    @app.get("/admin/settlement/fee-config", tags=["Admin"])
    def get_fee_config(admin_id: str = Depends(current_admin), services: Services = Depends(get_services)):
        return envelope(services.withdrawals.get_options())

    @app.post("/admin/settlement/fee-config", tags=["Admin"])
    def save_fee_config(
        options: SettlementOptions,
        admin_id: str = Depends(current_admin),
        services: Services = Depends(get_services),
    ):
        return envelope(services.withdrawals.save_options(options), msg="Saved")

    @app.get("/admin/settlement/options", tags=["Admin"])
    def get_settlement_methods(admin_id: str = Depends(current_admin), services: Services = Depends(get_services)):
        return envelope(services.accounts.get_methods())

    @app.post("/admin/settlement/options", tags=["Admin"])
    def save_settlement_methods(
        methods: SettlementMethods,
        admin_id: str = Depends(current_admin),
        services: Services = Depends(get_services),
    ):
        return envelope(services.accounts.save_methods(methods), msg="Saved")

    @app.get("/admin/settlement/merchants", tags=["Admin"])
    def list_merchant_settlements(admin_id: str = Depends(current_admin), services: Services = Depends(get_services)):
        return envelope(services.accounts.list_merchants())

    @app.post("/admin/settlement/merchant/save", tags=["Admin"])
    def admin_save_settlement_account(
        request: AdminSaveSettlementAccountRequest,
        admin_id: str = Depends(current_admin),
        services: Services = Depends(get_services),
    ):
        return envelope(services.accounts.admin_save_account(request.merchant_id, request), msg="Saved")

    @app.post("/admin/settlement/merchant/delete", tags=["Admin"])
    def admin_delete_settlement_account(
        request: AdminDeleteSettlementAccountRequest,
        admin_id: str = Depends(current_admin),
        services: Services = Depends(get_services),
    ):
        services.accounts.admin_delete_account(request.merchant_id, request.id)
        return envelope(msg="Deleted")

    @app.post("/admin/system/config", tags=["Admin"])
    def set_system_config(
        request: SystemConfigRequest,
        admin_id: str = Depends(current_admin),
        services: Services = Depends(get_services),
    ):
        services.config.set(request.key, request.value)
        return envelope(msg="Saved")

    @app.get("/admin/ledger/{merchant_id}/audit", tags=["Admin"])
    def ledger_audit(
        merchant_id: int, admin_id: str = Depends(current_admin), services: Services = Depends(get_services)
    ):
        return envelope(services.audit(merchant_id))


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)
