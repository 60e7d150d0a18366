# main.py (FastAPI): quiz-funnel payment backend
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from errors import AppError, ExternalServiceError
from routers.admin import admin_router
from routers.checkout import checkout_router
from routers.leads import leads_router
from routers.webhooks import webhooks_router
from settings import settings

logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(message)s")
log = logging.getLogger("quizfunnel")


app = FastAPI(title="Quiz funnel backend")


# --------- global request logger ----------
@app.middleware("http")
async def log_requests(request: Request, call_next):
    ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else None)
    ua = request.headers.get("user-agent", "")
    log.info("REQ %s %s ip=%s ua=%s", request.method, request.url.path, ip, ua)

    # bodies carry email addresses, so they are not logged
    response = await call_next(request)
    log.info("RESP %s %s -> %s", request.method, request.url.path, response.status_code)
    return response


# --------- error mapping ----------
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if isinstance(exc, ExternalServiceError):
        log.error("Upstream failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse({"detail": exc.message}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg")}
        for e in exc.errors()
    ]
    return JSONResponse({"detail": "Invalid request", "errors": errors}, status_code=400)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


# --------- API ----------
@app.get("/health")
def health():
    return {"ok": True}


app.include_router(leads_router)
app.include_router(checkout_router)
app.include_router(admin_router)
app.include_router(webhooks_router)
