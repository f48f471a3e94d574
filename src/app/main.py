from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime
import logging
import uvicorn

from core.config import settings
from core.factory import ServiceFactory
from core.middleware import request_context_middleware, setup_exception_handlers
from core.request_context import configure_logging
from core.responses import success_response
from core.scheduler import initialize_scheduler, cleanup_scheduler

from routers import paypal_router, subscription_router

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

ServiceFactory.configure_dependencies()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    try:
        await initialize_scheduler(
            ServiceFactory.get_reconciler(),
            settings.EXPIRY_SWEEP_INTERVAL_SECONDS,
        )
    except Exception as e:
        logger.error(f"Background scheduler failed to start: {e}")

    yield

    try:
        await cleanup_scheduler()
    except Exception as e:
        logger.error(f"Background scheduler failed to stop: {e}")


app = FastAPI(
    title="PayPal Subscription Reconciler",
    description="Keeps subscription rows and profile entitlements in sync with PayPal",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.DEBUG
)

setup_exception_handlers(app)
app.middleware("http")(request_context_middleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    return success_response(
        data={
            "timestamp": datetime.now().isoformat(),
            "version": "1.0.0",
            "environment": "development" if settings.DEBUG else "production",
            "paypal_api": settings.PAYPAL_API_URL,
        },
        message="ok"
    )


app.include_router(paypal_router.router)
app.include_router(subscription_router.router)

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
