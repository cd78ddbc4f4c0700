from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from app.core.config import settings
from app.core.exceptions import BillingError
from app.core.logging import setup_logging, get_logger, log_context
from app.core.rate_limit import limiter, rate_limit_exceeded_handler
from app.routers import health, subscriptions, usage, webhooks_stripe, plans, admin_plans

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションライフサイクル管理"""
    setup_logging(debug=settings.DEBUG)
    logger.info("アプリケーション起動")
    yield
    logger.info("アプリケーション終了")


app = FastAPI(
    title=settings.SITE_NAME,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# レート制限設定
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """課金ドメイン例外 → {"detail", "code"}"""
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        f"課金エラー: {exc.error_code} {request.method} {request.url.path} - {exc.detail}",
        extra=log_context(code=exc.error_code, path=request.url.path, **exc.context),
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# --- バリデーションエラー日本語化 ---
_FIELD_JA = {
    "price_id": "プランID",
    "new_price_id": "変更先プランID",
    "appointment_id": "予約ID",
    "auto_renew": "自動更新",
}


def _translate_error(err: dict) -> str:
    t = err.get("type", "")
    ctx = err.get("ctx", {})
    loc = err.get("loc", [])
    field = str(loc[-1]) if loc else ""
    fj = _FIELD_JA.get(field, field)

    if t == "string_too_short":
        return f"{fj}は{ctx.get('min_length', '')}文字以上で入力してください"
    if t == "missing":
        return f"{fj}は必須です"
    if t in ("int_parsing", "int_type"):
        return f"{fj}は数値で入力してください"
    if t == "string_type":
        return f"{fj}は文字列で入力してください"
    if t == "bool_parsing":
        return f"{fj}は真偽値で入力してください"
    return f"{fj}: 入力値が不正です"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = [_translate_error(e) for e in exc.errors()]
    return JSONResponse(status_code=422, content={"detail": "、".join(messages), "code": "VALIDATION_ERROR"})


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ルーター登録
app.include_router(health.router)
app.include_router(webhooks_stripe.router)
app.include_router(subscriptions.router)
app.include_router(usage.router)
app.include_router(plans.router)
app.include_router(admin_plans.router)
