import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings
from database import connect_db, close_db, get_store
from services.billing_service import PaymentSynchronizer
from services.payment_service import PayMongoGateway

# Routers
from routers import mobile, payments

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Rate limiter
limiter = Limiter(key_func=get_remote_address, default_limits=["120/minute"])


async def _sweep_overdue_payments() -> None:
    """
    Every OVERDUE_SWEEP_MINUTES: flags pending payments past due as overdue
    and refreshes the booking gate of the clients holding them.
    """
    while True:
        await asyncio.sleep(settings.OVERDUE_SWEEP_MINUTES * 60)
        try:
            billing = PaymentSynchronizer(get_store(), PayMongoGateway())
            reconciled = await billing.sweep_overdue_clients()
            if reconciled:
                logger.info(f"Overdue sweep: {reconciled} client(s) reconciled")
        except Exception as exc:
            logger.error(f"Overdue sweep failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await connect_db()
    task = asyncio.create_task(_sweep_overdue_payments())
    logger.info("HaulOps API started")
    yield
    # Shutdown
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    await close_db()
    logger.info("HaulOps API stopped")


app = FastAPI(
    title="HaulOps API",
    description="Truck delivery lifecycle and PayMongo billing",
    version="1.0.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.DEBUG else ["https://haulops.ph"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error envelope ───────────────────────────────────────────────────────────
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg')}" if field else "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": message},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error"},
    )


# Routers
app.include_router(mobile.router, prefix="/api/mobile", tags=["Mobile"])
app.include_router(payments.router, prefix="/api/payments", tags=["Payments"])


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "app": "haulops", "version": "1.0.0"}
