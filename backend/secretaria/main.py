# secretaria/main.py

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from secretaria.core.config import settings
from secretaria.api.v1 import api_v1_router
from secretaria.core.database import mongo_manager, redis_manager
from secretaria.core.exceptions import DurablePersistenceError, PublishValidationError
from secretaria.core.logging_config import setup_logging, add_trace_id_middleware, trace_id_var
from secretaria.modules.chat.broadcast import BroadcastRelay
from secretaria.modules.chat.repository import PendingResponseRepository

def build_lifespan(manage_connections: bool = True):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.PROJECT_NAME}...")
        if manage_connections:
            # Mongo é obrigatório: sem o Response Store não há garantia de entrega
            await mongo_manager.connect()
            await redis_manager.connect()
            await PendingResponseRepository(mongo_manager.get_db()).create_indexes()
            app.state.broadcast_relay = BroadcastRelay(redis_manager.client)
        try:
            yield
        finally:
            logger.info("Shutting down...")
            relay = getattr(app.state, "broadcast_relay", None)
            if relay is not None:
                await relay.close()
            if manage_connections:
                await redis_manager.disconnect()
                await mongo_manager.disconnect()
    return lifespan

def register_exception_handlers(app: FastAPI):
    """Toda resposta de erro da API usa o corpo ``{"error": "..."}``."""

    @app.exception_handler(PublishValidationError)
    async def publish_validation_handler(request: Request, exc: PublishValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})

    @app.exception_handler(DurablePersistenceError)
    async def persistence_error_handler(request: Request, exc: DurablePersistenceError):
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": str(exc)})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        logger.bind(trace_id=trace_id_var.get()).warning(f"Request validation failed: {exc.errors()}")
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"error": "Validation Error", "details": jsonable_errors(exc)})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.bind(trace_id=trace_id_var.get()).exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Internal server error"})

def jsonable_errors(exc: RequestValidationError) -> list:
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]

def create_app(manage_connections: bool = True) -> FastAPI:
    setup_logging()
    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=build_lifespan(manage_connections),
    )

    # CORS Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_ORIGIN],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_trace_id_middleware)

    register_exception_handlers(app)
    app.include_router(api_v1_router, prefix=settings.API_V1_STR)
    return app

app = create_app()
