from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.trustedhost import TrustedHostMiddleware

from app.core.config import settings
from app.core.errors import BillingError
from app.core.logging import get_logger, setup_logging
from app.api.router import router

setup_logging()
logger = get_logger(__name__)

app = FastAPI(
    title="Church Subscription Billing",
    version="0.1.0",
)

allowed_hosts = [h.strip() for h in settings.ALLOWED_HOSTS.split(",") if h.strip()]
if not allowed_hosts:
    allowed_hosts = ["*"]
app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response: Response = await call_next(request)
    if settings.SECURITY_HEADERS_ENABLED:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "frame-ancestors 'none'; base-uri 'self'"
        if settings.ENV != "dev":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    level = logger.warning if exc.status_code >= 500 or exc.status_code in (401, 403) else logger.info
    level("api.domain_error", path=request.url.path, error_code=exc.code, http_status=exc.status_code, context=exc.context)
    return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "detail": exc.message})


app.include_router(router)

@app.get("/health")
def health():
    return {"ok": True}
