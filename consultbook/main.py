import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Models must be imported before create_all
from . import (
    models,  # noqa: F401
    models_payment,  # noqa: F401
)
from .config import ALLOWED_ORIGINS
from .database import Base, engine
from .domain.payments.router import router as payments_router
from .domain.payments.router import webhooks_router as payment_webhooks_router
from .domain.plans.router import router as plans_router
from .domain.providers.router import router as providers_router
from .domain.scheduling.router import router as bookings_router
from .domain.subscriptions.router import router as subscriptions_router
from .errors import BookingError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🔄 Consultbook API starting")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("✅ Booking schema ready")
    except Exception as e:
        # Several uvicorn workers may race on the first create_all
        message = str(e)
        if "already exists" in message or "duplicate key" in message:
            logger.info("Booking schema already present")
        else:
            logger.error(f"❌ Could not create booking schema: {e}")

    yield
    logger.info("Consultbook API stopped")


app = FastAPI(title="Consultbook API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    if exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path}: {exc.detail}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """A missing bearer header surfaces as a validation error; report it as 401"""
    errors = jsonable_errors(exc)
    if any("authorization" in str(error.get("loc", "")).lower() for error in errors):
        logger.warning(f"⚠️ No bearer token on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=401,
            content={"detail": "Missing bearer token", "code": "unauthenticated", "retryable": False},
        )

    logger.info(f"{request.method} {request.url.path} -> 422 invalid_request")
    return JSONResponse(
        status_code=422,
        content={"detail": errors, "code": "invalid_request", "retryable": False},
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # Validator exceptions land in ctx and are not JSON serializable
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        errors.append(error)
    return errors


app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "webhook-id", "webhook-signature", "webhook-timestamp"],
)

app.include_router(plans_router)
app.include_router(providers_router)
app.include_router(bookings_router)
app.include_router(subscriptions_router)
app.include_router(payments_router)
app.include_router(payment_webhooks_router)


@app.get("/health")
def health():
    return {"status": "healthy"}
