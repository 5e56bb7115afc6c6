"""FastAPI application for the PullAgent server.

This module creates and configures the FastAPI application with:
- REST API for triggering transfers and fetching artifacts
- WebSocket endpoint agents dial into for upload commands
- Signed-URL object routes when the local filesystem gateway is used

Usage:
    uvicorn pullagent.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from pullagent.core.config import (
    DEFAULT_READ_CREDENTIAL_TTL,
    DEFAULT_WRITE_CREDENTIAL_TTL,
    OrchestratorConfig,
)
from pullagent.server.api.router import router as api_router
from pullagent.server.gateway import ObjectStoreGateway, S3Gateway, create_gateway
from pullagent.server.hub import AgentHub
from pullagent.server.hub import router as ws_router
from pullagent.server.orchestrator import Orchestrator
from pullagent.server.store import TransferStore, create_store

# Configuration from environment variables with defaults
DB_PATH = os.environ.get("PULLAGENT_DB_PATH", "pullagent.db")
LOG_PATH = Path(os.environ.get("PULLAGENT_LOG_PATH", "pullagent-server.log"))

logger = logging.getLogger(__name__)


def _build_gateway_config() -> dict[str, str | None]:
    """Build gateway configuration from environment variables."""
    # S3 gateway if bucket is configured
    s3_bucket = os.environ.get("PULLAGENT_S3_BUCKET")
    if s3_bucket:
        return {
            "type": "s3",
            "bucket": s3_bucket,
            "endpoint_url": os.environ.get("PULLAGENT_S3_ENDPOINT"),
            "public_endpoint_url": os.environ.get("PULLAGENT_S3_PUBLIC_ENDPOINT"),
            "access_key": os.environ.get("PULLAGENT_S3_ACCESS_KEY"),
            "secret_key": os.environ.get("PULLAGENT_S3_SECRET_KEY"),
            "region": os.environ.get("PULLAGENT_S3_REGION", "us-east-1"),
        }

    # Local filesystem (default)
    return {
        "type": "local",
        "local_path": os.environ.get("PULLAGENT_STORAGE_PATH", "objects"),
        "public_url": os.environ.get("PULLAGENT_PUBLIC_URL", "http://localhost:8000"),
        "secret": os.environ.get("PULLAGENT_SIGNING_SECRET"),
    }


def _build_orchestrator_config() -> OrchestratorConfig:
    """Build orchestrator TTLs from environment variables."""
    return OrchestratorConfig(
        write_credential_ttl=int(
            os.environ.get("PULLAGENT_WRITE_TTL", DEFAULT_WRITE_CREDENTIAL_TTL)
        ),
        read_credential_ttl=int(
            os.environ.get("PULLAGENT_READ_TTL", DEFAULT_READ_CREDENTIAL_TTL)
        ),
    )


def setup_logging(log_path: Path) -> None:
    """Configure logging to output to both file and stdout.

    Args:
        log_path: Path to the log file.
    """
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    # Root logger for pullagent
    root_logger = logging.getLogger("pullagent")
    root_logger.setLevel(logging.INFO)

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    # File handler
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(uvicorn_name)
        uvicorn_logger.addHandler(file_handler)


def create_app(
    store: TransferStore,
    gateway: ObjectStoreGateway,
    hub: AgentHub | None = None,
    config: OrchestratorConfig | None = None,
    api_key: str | None = None,
) -> FastAPI:
    """Create FastAPI application around explicit components.

    Args:
        store: Transfer record store.
        gateway: Object store gateway.
        hub: Agent hub (a hub accepting any agent is created when omitted).
        config: Credential TTLs.
        api_key: Bearer key required on /api routes. None disables the check.

    Returns:
        Configured FastAPI application.
    """
    hub = hub or AgentHub()
    orchestrator = Orchestrator(store, gateway, hub, config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        # Startup
        hub.bind_loop(asyncio.get_running_loop())
        orchestrator.start()

        logger.info("=" * 60)
        logger.info("PullAgent Server Starting")
        logger.info("=" * 60)
        logger.info("  Store:    %s", store.location)
        logger.info("  Objects:  %s", gateway.location)
        logger.info("  API key:  %s", "required" if api_key else "disabled")
        logger.info("  Write URL TTL: %ds", orchestrator.config.write_credential_ttl)
        logger.info("  Read URL TTL:  %ds", orchestrator.config.read_credential_ttl)
        logger.info("=" * 60)

        yield

        # Shutdown
        logger.info("PullAgent Server shutting down")
        orchestrator.stop()
        store.close()

    application = FastAPI(
        title="PullAgent Server",
        description="Pull files from agents behind NAT into object storage",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.state.orchestrator = orchestrator
    application.state.hub = hub
    application.state.gateway = gateway
    application.state.api_key = api_key

    application.include_router(api_router)
    application.include_router(ws_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    setup_logging(LOG_PATH)

    gateway = create_gateway(_build_gateway_config())
    if isinstance(gateway, S3Gateway):
        gateway.ensure_bucket()

    return create_app(
        store=create_store(DB_PATH),
        gateway=gateway,
        hub=AgentHub(agent_token=os.environ.get("PULLAGENT_AGENT_TOKEN")),
        config=_build_orchestrator_config(),
        api_key=os.environ.get("PULLAGENT_API_KEY"),
    )
