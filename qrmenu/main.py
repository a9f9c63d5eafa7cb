from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from qrmenu import __version__
from qrmenu.api.orders import router as orders_router
from qrmenu.api.websocket import router as websocket_router
from qrmenu.api.analytics import router as analytics_router
from qrmenu.config import settings
from qrmenu.core.database import engine, Base, check_database
from qrmenu.core.exceptions import OrderServiceError, ValidationError
from qrmenu.core.redis_client import check_redis
from qrmenu.utils.broadcast import Broadcaster
import logging
import qrmenu.models.order  # noqa: F401  registers tables on Base

# Configure logging
logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)


def error_response(error: Exception, status_code: int, message: str = "") -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": str(error),
            "exception": error.__class__.__name__,
            "message": message or str(error),
        },
    )


async def order_service_error_handler(request: Request, exc: OrderServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return error_response(exc, exc.status_code)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return error_response(ValidationError(details), 400, "Malformed request")


def create_app(broadcaster: Broadcaster = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables
        Base.metadata.create_all(bind=engine)
        yield
        await app.state.broadcaster.close()

    app = FastAPI(
        title="QR Menu Orders API",
        description="Order lifecycle and live order boards for QR-menu restaurants",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.broadcaster = broadcaster or Broadcaster()

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(OrderServiceError, order_service_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Include routers
    app.include_router(orders_router, prefix="/api/v1", tags=["orders"])
    app.include_router(websocket_router, prefix="/api/v1", tags=["websocket"])
    app.include_router(analytics_router, prefix="/api/v1")

    @app.get("/")
    async def root():
        return {"message": "QR Menu Orders running"}

    @app.get("/health")
    def health_check():
        checks = {"database": check_database()}
        if settings.use_redis_order_numbers:
            checks["redis"] = check_redis()
        return {
            "status": "healthy" if all(checks.values()) else "degraded",
            "version": __version__,
            "checks": checks,
            "connections": app.state.broadcaster.connection_count,
        }

    return app


app = create_app()


def run():
    import uvicorn
    uvicorn.run("qrmenu.main:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
