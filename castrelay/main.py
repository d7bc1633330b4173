import time
import traceback
import uuid
from contextlib import asynccontextmanager
from os import environ

import logfire
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from granian import Granian
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from castrelay.api.errors import app_error_handler
from castrelay.app_config import get_app_environ_config
from castrelay.domain.relay import RelayService, SessionRegistry
from castrelay.domain.rendezvous import PeerRegistry
from castrelay.domain.transcode import TranscodeSupervisor
from castrelay.shared.api.utils import E_INVALID_PARAMS, api_failure, init_logger, load_routes
from castrelay.utils.app_errors import AppError, AppErrorCode


class HTTPLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore
        start_time = time.time()
        request_id = str(uuid.uuid4())[:8]

        logger.info(f"[{request_id}] {request.method} {request.url.path}")

        try:
            response = await call_next(request)

            process_time = (time.time() - start_time) * 1000

            logger.info(
                f"[{request_id}] {request.method} {request.url.path} - "
                f"Status: {response.status_code} - "
                f"Duration: {process_time:.2f}ms"
            )

            return response

        except Exception as exc:
            process_time = (time.time() - start_time) * 1000

            logger.error(
                f"[{request_id}] Unhandled exception in {request.method} {request.url.path} - "
                f"Duration: {process_time:.2f}ms - "
                f"Error: {type(exc).__name__}: {exc}\n"
                f"Traceback:\n{traceback.format_exc()}"
            )

            failure = api_failure(
                errcode=AppErrorCode.E_INTERNAL_ERROR.value,
                errmesg=f"Internal server error (request_id: {request_id})",
            )
            return ORJSONResponse(
                status_code=500,
                content=failure.model_dump(),
            )


async def app_validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()

    logger.warning(
        "Validation error: path={} method={} errors={}",
        request.url.path,
        request.method,
        errors,
    )

    failure = api_failure(E_INVALID_PARAMS, errmesg=str(errors))

    return ORJSONResponse(status_code=422, content=failure.model_dump())


@asynccontextmanager
async def lifespan(server: FastAPI):
    init_logger()

    logger.info("Application startup...")

    cfg = get_app_environ_config()

    server.state.session_registry = SessionRegistry()
    server.state.peer_registry = PeerRegistry()
    server.state.relay_service = RelayService(
        server.state.session_registry,
        TranscodeSupervisor.from_config(cfg),
        token=cfg.RELAY_TOKEN,
        bytes_log_interval=cfg.RELAY_BYTES_LOG_INTERVAL_SECONDS,
    )
    server.state.relay_service.start_background_tasks()

    if not getattr(server.state, "routes_loaded", False):
        disabled_routes = list(cfg.API_DISABLED)
        if not cfg.PEER_SERVER_ENABLE:
            disabled_routes.append("rendezvous")
        load_routes(server, "", disabled_routes)
        server.state.routes_loaded = True

    if cfg.LOGFIRE_ENABLE:
        logger.info("Logfire initializing")

        logfire.configure(
            token=cfg.LOGFIRE_TOKEN,
            service_name="castrelay",
            service_version=environ.get("BUILD_COMMIT") or "dev",
        )

        logger.info("Logfire instrument fastapi")
        logfire.instrument_fastapi(server, capture_headers=True)

        logger.info("Logfire instrument pydantic")
        logfire.instrument_pydantic()

    if not cfg.RELAY_TOKEN:
        logger.warning("RELAY_TOKEN not set, relay accepts any client")

    yield

    logger.info("Application shutdown...")

    await server.state.relay_service.shutdown()


app = FastAPI(
    version="1.0",
    title="castrelay",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)

app.add_middleware(HTTPLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,  # type: ignore
    allow_origins=get_app_environ_config().API_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(RequestValidationError, app_validation_exception_handler)  # type: ignore
app.add_exception_handler(AppError, app_error_handler)  # type: ignore


def build_granian_kwargs():
    cfg = get_app_environ_config()

    # Sessions live in process memory, so a single worker owns all of them
    kwargs = {
        "interface": "asgi",
        "address": cfg.API_HOST,
        "port": cfg.API_PORT,
        "workers": 1,
        "reload": cfg.DEBUG,
    }

    return kwargs


def main():
    Granian("castrelay.main:app", **build_granian_kwargs()).serve()


if __name__ == "__main__":
    main()
