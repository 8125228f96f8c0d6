# server.py
import asyncio
import logging
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mapmarked.errors import RateLimitExceeded
from mapmarked.interface import close_order_storage, open_order_storage
from mapmarked.order_pipeline import router as pipeline_router
from mapmarked.order_storage import run_sweeper
from mapmarked.settings import settings

# --- Logging Configuration ---
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger(__name__)

if not settings.STRIPE_SECRET_KEY:
    log.warning("STRIPE_SECRET_KEY not set. Checkout will fail.")
if not settings.webhook_secret_configured:
    if settings.is_production:
        log.critical("STRIPE_WEBHOOK_SECRET not set in production. Webhooks will be refused.")
    else:
        log.warning("STRIPE_WEBHOOK_SECRET not set. Webhook signatures will NOT be verified.")
if not settings.PRINTFUL_API_KEY:
    log.warning("PRINTFUL_API_KEY not set. Fulfillment will fail.")

# --- App Initialization ---
app = FastAPI(
    title="MapMarked Storefront API",
    description="Checkout, payment webhooks and Printful fulfillment for MapMarked canvases.",
    version="1.0.0",
)

# --- CORS Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error Handlers ---
@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"detail": "Too many requests. Please try again later."},
        headers={"Retry-After": str(exc.retry_after)},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    log.warning(f"Rejected malformed request to {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": "Invalid request"})


# --- Startup / Shutdown ---
_sweeper_task: Optional[asyncio.Task] = None


@app.on_event("startup")
async def on_startup():
    """Opens the order store and starts the expiry sweeper."""
    global _sweeper_task
    storage = await open_order_storage(settings)
    _sweeper_task = asyncio.create_task(run_sweeper(storage, settings.STORE_SWEEP_INTERVAL_SECONDS))
    log.info(f"{settings.PROJECT_NAME} started (APP_ENV={settings.APP_ENV}).")


@app.on_event("shutdown")
async def on_shutdown():
    global _sweeper_task
    if _sweeper_task is not None:
        _sweeper_task.cancel()
        try:
            await _sweeper_task
        except asyncio.CancelledError:
            pass
        _sweeper_task = None
    await close_order_storage()
    log.info("Order store closed.")


app.include_router(pipeline_router, prefix="/api")


@app.get("/")
async def root():
    return {"message": f"{settings.PROJECT_NAME} API is running"}
