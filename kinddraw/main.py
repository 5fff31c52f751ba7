import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from kinddraw.config import Settings, get_settings
from kinddraw.database import get_db, init_db
from kinddraw.errors import InvalidInput, KindDrawError
from kinddraw.reconciler import ReconcileOutcome, reconcile
from kinddraw.routes import router
from kinddraw.stripe_service import StripeGateway
from kinddraw.webhooks import verify_event

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.database_url:
        init_db(settings.database_url)
    else:
        logger.warning("DATABASE_URL is not set; database routes will answer 500")
    yield


app = FastAPI(title="KindDraw", lifespan=lifespan)

app.include_router(router)


def _error_response(request: Request, exc: KindDrawError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": str(exc)})


@app.exception_handler(KindDrawError)
async def kinddraw_error_handler(request: Request, exc: KindDrawError):
    return _error_response(request, exc)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.errors())
    return _error_response(request, InvalidInput("Invalid input"))


@app.get("/webhooks/stripe")
def stripe_webhook_liveness():
    return PlainTextResponse("ok")


@app.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
):
    api_key, endpoint_secret = settings.require_webhook_secrets()

    # Verify against the raw bytes; re-serialized JSON would not match the signature
    payload = await request.body()
    event = verify_event(payload, stripe_signature, endpoint_secret)

    outcome = reconcile(db, StripeGateway(api_key), event)
    if outcome is ReconcileOutcome.FAILED:
        # Still a 200: only signature and configuration failures are non-2xx
        logger.error("Event %s (%s) acknowledged without a ledger write", event.id, event.type)
    else:
        logger.info("Event %s (%s): %s", event.id, event.type, outcome.value)
    return PlainTextResponse("ok")
