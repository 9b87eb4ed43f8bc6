import time
import uuid
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from src import version
from src.config.settings import settings
from src.core.database import async_session_maker, init_schema
from src.core.errors import AppError, app_error_handler, request_validation_handler
from src.core.logger import configure_logging
from src.domain.bugs.router import router as bugs_router
from src.domain.users.permissions import seed_role_permissions
from src.domain.users.router import auth_router
from src.domain.users.router import router as users_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manages the startup and shutdown lifecycle of the FastAPI application."""
    configure_logging()

    # Initialize SQLite schema and the permission records the gates read
    await init_schema()
    async with async_session_maker() as session:
        await seed_role_permissions(session)

    logger.info(f"{settings.APP_NAME} {version.VERSION} started")
    yield
    logger.info(f"{settings.APP_NAME} shutting down")


# --- Application Setup ---
app = FastAPI(
    title=settings.APP_NAME,
    debug=settings.DEBUG,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url=None,
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    """Injects a unique Request-ID into the logging context and response headers.

    Args:
        request: The incoming HTTP request.
        call_next: The next middleware or route handler in the pipeline.

    Returns:
        Response: The HTTP response with injected tracking headers.
    """
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id

    with logger.contextualize(request_id=request_id):
        logger.info(f"Started {request.method} {request.url.path}")
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            process_time = time.perf_counter() - start_time

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = str(process_time)

            logger.info(f"Completed {response.status_code} in {process_time:.4f}s")
            return response
        except Exception as e:
            process_time = time.perf_counter() - start_time
            logger.error(f"Request failed after {process_time:.4f}s: {e}")
            raise


# --- Exception Handlers ---
app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catches unhandled exceptions and returns a standardized JSON response.

    Args:
        request: The incoming HTTP request.
        exc: The raised exception.

    Returns:
        JSONResponse: A 500 Internal Server Error payload.
    """
    logger.exception("Unhandled server exception")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred.",
            "request_id": getattr(request.state, "request_id", "unknown"),
        },
    )


# --- Routing ---
app.include_router(auth_router)
app.include_router(users_router)
app.include_router(bugs_router)


@app.get("/health", tags=["System"])
async def health_check() -> dict[str, str]:
    """Provides a basic health check for the application.

    Returns:
        dict: The application status, name and version.
    """
    return {
        "status": "ok",
        "service": settings.APP_NAME,
        "version": version.VERSION,
    }
