#!/usr/bin/env python3
"""
Alerts API Server
RESTful API for querying alerts and triggering alert runs
"""
import logging
import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from alerts_api.routes import alerts_router, health_router
from alerts_core.config import AlertsConfig, setup_logging
from alerts_core.engine import AlertRunOrchestrator

logger = logging.getLogger(__name__)


def create_app(
    orchestrator: Optional[AlertRunOrchestrator] = None,
    config: Optional[AlertsConfig] = None
) -> FastAPI:
    """
    Build the FastAPI app.

    Collaborators live on app.state. When no orchestrator is passed one is
    wired from configuration on startup.
    """
    app = FastAPI(
        title="Alerts API",
        description="Query triggered alerts and run rule evaluation",
        version="1.0.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(alerts_router)

    app.state.config = config
    app.state.orchestrator = orchestrator

    @app.on_event("startup")
    def startup_event():
        """Wire the orchestrator on startup"""
        if app.state.config is None:
            app.state.config = AlertsConfig()
        if app.state.orchestrator is None:
            app.state.orchestrator = AlertRunOrchestrator.from_config(app.state.config)
        logger.info("Alerts API started successfully")
        logger.info(f"Alert store: {app.state.config.describe_database()}")

    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

def main():
    """Run the API server"""
    config = AlertsConfig()
    setup_logging(config.log_level)

    port = config.api_port
    host = os.environ.get('API_HOST', '0.0.0.0')

    logger.info(f"Starting Alerts API server on {host}:{port}")

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=config.log_level.lower()
    )


if __name__ == "__main__":
    main()
