from __future__ import annotations

from contextlib import asynccontextmanager
import json
import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from accessvault.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from accessvault.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id, is_versioned_request
from accessvault.apps.api.routes.audit import router as audit_router
from accessvault.apps.api.routes.devices import router as devices_router
from accessvault.apps.api.routes.health import router as health_router
from accessvault.apps.api.routes.integrations import router as integrations_router
from accessvault.apps.api.routes.onboarding import router as onboarding_router
from accessvault.apps.api.routes.rpc import router as rpc_router
from accessvault.apps.api.routes.sessions import router as sessions_router
from accessvault.core.config import Settings, get_settings
from accessvault.core.errors import AccessVaultError
from accessvault.core.logging import configure_logging
from accessvault.services.container import PortalServices, build_services
from accessvault.services.telemetry import record_request


_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
)
_PUBLIC_PATHS = {"/v1/health", "/v1/rpc/accept_invitation"}


def create_app(settings: Settings | None = None, services: PortalServices | None = None) -> FastAPI:
    settings = settings or (services.settings if services is not None else get_settings())
    configure_logging(settings.log_level)
    owns_services = services is None
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        # Injected containers belong to the caller, who closes them.
        if owns_services:
            await services.aclose()

    app = FastAPI(title="AccessVault API", lifespan=lifespan, docs_url="/v1/docs", openapi_url="/v1/openapi.json")
    app.state.services = services

    origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_methods=["*"],
        allow_headers=["authorization", "content-type", "x-client-info", "apikey", "x-request-id"],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = get_request_id(request)
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        # Wrap plain JSON bodies from versioned routes in the success envelope.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
        ):
            raw_body = getattr(response, "body", None)
            if raw_body:
                try:
                    payload = json.loads(raw_body)
                except (TypeError, ValueError):
                    payload = None
                is_enveloped = (
                    isinstance(payload, dict)
                    and "data" in payload
                    and isinstance(payload.get("meta"), dict)
                    and payload["meta"].get("api_version") == API_VERSION
                )
                if payload is not None and not is_enveloped:
                    wrapped = JSONResponse(
                        content={"data": payload, "meta": {"request_id": request_id, "api_version": API_VERSION}},
                        status_code=response.status_code,
                    )
                    for key, value in response.headers.items():
                        if key.lower() in {"content-length", "content-type"}:
                            continue
                        wrapped.headers[key] = value
                    response = wrapped
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(AccessVaultError)
    async def _domain_exception_handler(request: Request, exc: AccessVaultError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(onboarding_router, prefix=f"/{API_VERSION}")
    app.include_router(devices_router, prefix=f"/{API_VERSION}")
    app.include_router(sessions_router, prefix=f"/{API_VERSION}")
    app.include_router(rpc_router, prefix=f"/{API_VERSION}")
    app.include_router(integrations_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer auth and version metadata into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="AccessVault API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app
