"""
Base service class for backend services.

Wires configuration, logging, metrics, authentication and background work
into a FastAPI application, and owns the process lifecycle:

1. SIGINT/SIGTERM stops the listener from accepting new connections
2. in-flight requests get ``shutdown_timeout`` seconds to finish, the rest
   are cancelled
3. the lifespan shutdown waits for every tracked background task, however
   long that takes
4. the process exits, non-zero if step 2 had to cancel anything
"""

import asyncio
import os
import signal
import sys
import threading
import time
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Dict, Optional

import asyncpg
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry

from .auth import Authenticator, Authorizer, PublicKeyStore
from .background import BackgroundTaskTracker
from .config import ServiceConfig, get_config
from .errors import ServerError, ServiceException, ShutdownError
from .logging import clear_context, configure_logging, get_logger, set_request_id
from .metrics import get_metrics_collector
from .persistence.base import Repository
from .persistence.postgres import PostgresRepository, create_pool
from .persistence.users import USERS_TABLE, User, create_users_table


class BaseService:
    """Base service class with common functionality."""

    def __init__(
        self,
        service_name: str,
        port: int,
        *,
        config: Optional[ServiceConfig] = None,
        user_repository: Optional[Repository] = None,
        key_store: Optional[PublicKeyStore] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.service_name = service_name
        self.port = port
        self.config = config or get_config(service_name, port)

        configure_logging(service_name, self.config.log_level)
        self.logger = get_logger(f"{service_name}.server")
        self.metrics = get_metrics_collector(service_name, registry)

        self.pool: Optional[asyncpg.Pool] = None
        self._owns_pool = user_repository is None
        # The pool is attached during startup when the service owns it.
        self.users: Repository = user_repository or PostgresRepository(
            None, USERS_TABLE, User, timeout=self.config.repository_timeout
        )
        self.key_store = key_store

        self.tracker = BackgroundTaskTracker(self.metrics)
        self.authenticator = Authenticator(
            self.users,
            key_store,
            issuer=self.config.authority,
            audience=self.config.audience,
            metrics=self.metrics,
        )
        self.authorizer = Authorizer(self.users, self.authenticator, self.metrics)

        self._start_time = time.time()
        self._in_flight_requests = 0
        self._abandoned_requests = 0
        self._shutting_down = False
        self._server: Optional[uvicorn.Server] = None

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            version="1.0.0",
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
            lifespan=self._lifespan,
        )

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self.startup()
        try:
            yield
        finally:
            await self.shutdown()

    async def startup(self) -> None:
        """Load keys, open the database pool and start the tracker."""
        self.tracker.start()

        if self.key_store is None:
            self.key_store = await PublicKeyStore.from_config(self.config)
        self.authenticator.key_store = self.key_store

        if self._owns_pool:
            self.pool = await create_pool(self.config)
            await create_users_table(self.pool)
            self.users.pool = self.pool

        await self.on_startup()
        self.logger.info("Starting server", host=self.config.host, port=self.port)

    async def shutdown(self) -> None:
        """Wait for background work, then release resources."""
        self.logger.info("Completing background tasks", outstanding=self.tracker.outstanding)
        await self.tracker.wait()

        await self.on_shutdown()

        if self.pool is not None:
            await self.pool.close()
            self.pool = None

        self.logger.info("Stopped server", port=self.port)

    async def on_startup(self) -> None:
        """Hook for subclasses, run after the shared resources are ready."""

    async def on_shutdown(self) -> None:
        """Hook for subclasses, run after background tasks have drained."""

    def begin_shutdown(self, sig: Optional[int] = None) -> None:
        """Note that a termination signal arrived."""
        if self._shutting_down:
            return
        self._shutting_down = True
        self.logger.info(
            "Shutting down server",
            signal=signal.Signals(sig).name if sig is not None else None,
            in_flight_requests=self._in_flight_requests,
            background_tasks=self.tracker.outstanding,
        )

    def _setup_middleware(self):
        """Set up middleware."""

        @self.app.middleware("http")
        async def handle_request(request: Request, call_next):
            set_request_id(request.headers.get("X-Request-ID"))
            start_time = time.time()
            self._in_flight_requests += 1

            # Unhandled exceptions escape call_next and are rendered as 500 further out.
            status_code = 500
            try:
                response = await call_next(request)
                status_code = response.status_code
                response.headers["X-XSS-Protection"] = "1; mode=block"
                response.headers["X-Frame-Options"] = "deny"
                return response
            except asyncio.CancelledError:
                if self._shutting_down:
                    self._abandoned_requests += 1
                    self.logger.error(
                        "Request cancelled by shutdown",
                        method=request.method,
                        path=request.url.path,
                    )
                raise
            finally:
                self._in_flight_requests -= 1
                duration = time.time() - start_time
                self.metrics.record_http_request(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=status_code,
                    duration=duration
                )
                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    path=request.url.path,
                    protocol=f"HTTP/{request.scope.get('http_version', '1.1')}",
                    remote_addr=_remote_addr(request),
                    status_code=status_code,
                    duration_ms=round(duration * 1000, 2)
                )
                clear_context()

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            try:
                dependencies = await self._check_dependencies()
                self.metrics.record_health_check("ok")

                return {
                    "service": self.service_name,
                    "status": "ok",
                    "uptime_seconds": self._get_uptime(),
                    "dependencies": dependencies,
                    "background_tasks": self.tracker.outstanding,
                    "version": "1.0.0",
                    "commit": os.getenv("GIT_COMMIT", "unknown")
                }
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                self.metrics.record_health_check("error")
                return JSONResponse(
                    status_code=503,
                    content={
                        "service": self.service_name,
                        "status": "error",
                    }
                )

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(
                content=self.metrics.export(),
                media_type=CONTENT_TYPE_LATEST
            )

        @self.app.exception_handler(ServiceException)
        async def service_exception_handler(request: Request, exc: ServiceException):
            """Render expected errors with their status and headers."""
            if isinstance(exc, ServerError):
                self._log_server_error(request, exc.internal_message, exc.cause)
            else:
                self.logger.info(
                    "Request rejected",
                    code=exc.code,
                    status_code=exc.status_code,
                    method=request.method,
                    path=request.url.path,
                )
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_response().model_dump(),
                headers=exc.headers or None,
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Anything unexpected: sanitized 500 and drop the connection."""
            self._log_server_error(request, str(exc), exc)
            return JSONResponse(
                status_code=500,
                content=ServerError(exc).to_response().model_dump(),
                headers={"Connection": "close"},
            )

    def _log_server_error(self, request: Request, message: str, cause: Optional[BaseException]):
        self.logger.error(
            "Server error",
            error=message,
            method=request.method,
            path=request.url.path,
            remote_addr=_remote_addr(request),
            exc_info=cause,
        )

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies. Extend in subclasses."""
        dependencies: Dict[str, str] = {}
        if self.pool is not None:
            await asyncio.wait_for(self.pool.fetchval("SELECT 1"), timeout=self.config.repository_timeout)
            dependencies["postgres"] = "ok"
        return dependencies

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    def run(self):
        """Serve until a termination signal, then shut down gracefully.

        Raises ``ShutdownError`` if in-flight requests outlived the grace period.
        """
        config = uvicorn.Config(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
            timeout_graceful_shutdown=self.config.shutdown_timeout,
        )
        self._server = _GracefulServer(config, self)
        asyncio.run(self._server.serve())

        if self._abandoned_requests:
            raise ShutdownError(self._abandoned_requests, self.config.shutdown_timeout)

    def stop(self) -> None:
        """Ask a running server to shut down, as a termination signal would."""
        if self._server is not None:
            self._server.handle_exit(signal.SIGTERM, None)


class _GracefulServer(uvicorn.Server):
    """uvicorn server that tells the service when a signal arrives."""

    def __init__(self, config: uvicorn.Config, service: BaseService):
        super().__init__(config)
        self.service = service

    def handle_exit(self, sig: int, frame: Any) -> None:
        self.service.begin_shutdown(sig)
        super().handle_exit(sig, frame)

    @contextmanager
    def capture_signals(self):
        # Handled signals are not re-raised once serve() returns.
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        handled = (signal.SIGINT, signal.SIGTERM)
        original_handlers = {sig: signal.signal(sig, self.handle_exit) for sig in handled}
        try:
            yield
        finally:
            for sig, handler in original_handlers.items():
                signal.signal(sig, handler)


def run_service(service: BaseService) -> None:
    """Process entry point: run ``service`` and map shutdown failures to exit code 1."""
    try:
        service.run()
    except ShutdownError as e:
        service.logger.error("Shutdown did not complete cleanly", error=str(e))
        sys.exit(1)


def _remote_addr(request: Request) -> Optional[str]:
    if request.client is None:
        return None
    return f"{request.client.host}:{request.client.port}"
