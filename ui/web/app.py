"""
FastAPI Application - Dashboard API setup
=========================================

This module creates and configures the FastAPI application
with its routes, middleware and the background session watcher.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from core.config import Config, load_config
from core.exceptions import ConfigError
from core.logging import setup_logging, get_logger
from rules.engine import RuleEngine
from rules.store import RuleStore
from services.runtime import build_engine, build_watcher
from services.watcher import SessionWatcher

logger = get_logger("web.app")


def create_app(
    config: Optional[Config] = None,
    engine: Optional[RuleEngine] = None,
    watcher: Optional[SessionWatcher] = None,
    start_watcher: bool = True,
    debug: bool = False
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Application configuration
        engine: Rule engine (built from config when omitted)
        watcher: Session watcher (built from config when omitted)
        start_watcher: Start polling sessions right away
        debug: Enable debug mode

    Returns:
        Configured FastAPI application
    """
    if config is None:
        config = load_config()
        setup_logging(
            log_dir=config.log_dir,
            log_level="DEBUG" if debug else "INFO",
            console_output=True
        )

    debug = debug or config.debug or config.ui.web_debug

    if engine is None:
        engine = build_engine(config)
    if watcher is None:
        watcher = build_watcher(config, engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        watcher.stop()
        engine.shutdown()
        logger.info("Web application stopped")

    app = FastAPI(
        title="Session Autopilot",
        description="Dashboard API for the session automation engine",
        version=config.version,
        debug=debug,
        lifespan=lifespan,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.engine = engine
    app.state.watcher = watcher
    app.state.rule_store = RuleStore(config.rules_path)

    if start_watcher:
        watcher.start()

    from .routes import router as api_router
    app.include_router(api_router, prefix="")

    # Exception handlers
    @app.exception_handler(ConfigError)
    async def config_exception_handler(request: Request, exc: ConfigError):
        logger.warning(f"Rejected request: {exc}")
        return JSONResponse(
            status_code=400,
            content={"error": exc.message, "details": exc.details}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "detail": str(exc) if debug else "An error occurred"}
        )

    logger.info("Web application created")

    return app


def run_app(
    host: str = "127.0.0.1",
    port: int = 8765,
    debug: bool = False,
    config: Optional[Config] = None
) -> None:
    """
    Run the dashboard API server.

    Args:
        host: Host address to bind
        port: Port to listen on
        debug: Enable debug mode
        config: Application configuration
    """
    if config is None:
        config = load_config()

    app = create_app(config=config, debug=debug)

    logger.info(f"Starting web server on {host}:{port}")

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="debug" if debug else "info"
    )
