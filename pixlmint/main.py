import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

# Import models for table creation
from pixlmint.core import models  # noqa: F401
from pixlmint.core.config import Settings, settings
from pixlmint.core.errors import MintPipelineError
from pixlmint.domains.mint.router import mint_error_handler, router as mint_router
from pixlmint.domains.mint.services import MintDependencies, MintOrchestrator, build_dependencies
from pixlmint.domains.tokens.router import router as tokens_router
from pixlmint.shared.database.connection import Base, engine
from pixlmint.shared.utils.response import ErrorResponse, error_response

SERVICE_NAME = "minting-service"

logger = logging.getLogger(__name__)


def _install(application: FastAPI, dependencies: MintDependencies) -> None:
    application.state.deps = dependencies
    application.state.orchestrator = MintOrchestrator(dependencies)


def create_app(
    app_settings: Settings = settings,
    dependencies: Optional[MintDependencies] = None,
) -> FastAPI:
    logging.basicConfig(
        level=app_settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        if getattr(application.state, "deps", None) is None:
            # Create database tables
            Base.metadata.create_all(bind=engine)
            _install(application, build_dependencies(app_settings))
        logger.info(f"{app_settings.app_name} ready on chain {app_settings.chain_name}")
        yield
        await application.state.orchestrator.wait_for_reports()

    application = FastAPI(
        title=app_settings.app_name,
        description=app_settings.app_description,
        version=app_settings.app_version,
        lifespan=lifespan,
    )
    application.state.settings = app_settings
    if dependencies is not None:
        _install(application, dependencies)

    # Include routers
    application.include_router(mint_router)
    application.include_router(tokens_router)

    application.add_exception_handler(MintPipelineError, mint_error_handler)

    @application.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return error_response(
            400, ErrorResponse(error="ValidationError", message=str(exc.errors()))
        )

    @application.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return error_response(
            exc.status_code,
            ErrorResponse(error=HTTPStatus(exc.status_code).phrase, message=str(exc.detail)),
        )

    @application.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Minting service error")
        return error_response(
            500,
            ErrorResponse(error="InternalError", message=str(exc), service=SERVICE_NAME),
        )

    @application.get("/")
    async def root() -> dict:
        return {
            "service": f"{app_settings.collection_name} Minting Service",
            "status": "running",
            "endpoints": [
                "GET /health - Health check",
                "POST /mint - Mint NFT",
                "GET /verify/:tokenId - Verify token",
            ],
        }

    @application.get("/health")
    async def health_check(request: Request):
        chain = request.app.state.deps.chain
        try:
            # Test blockchain connection
            block_number = await run_in_threadpool(chain.get_block_number)
            return {
                "status": "healthy",
                "service": SERVICE_NAME,
                "version": app_settings.app_version,
                "environment": app_settings.node_env,
                "blockchain": {
                    "connected": True,
                    "chain": app_settings.chain_name,
                    "blockNumber": block_number,
                },
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        except Exception as e:
            return JSONResponse(
                status_code=503,
                content={
                    "status": "unhealthy",
                    "service": SERVICE_NAME,
                    "blockchain": {"connected": False, "chain": app_settings.chain_name},
                    "error": str(e),
                },
            )

    return application


app = create_app()
