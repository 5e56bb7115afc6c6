"""FastAPI dependencies for API routes."""

from __future__ import annotations

import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pullagent.server.gateway import LocalFSGateway, ObjectStoreGateway
from pullagent.server.hub import AgentHub
from pullagent.server.orchestrator import Orchestrator

# Security scheme
security = HTTPBearer(auto_error=False)


def get_orchestrator(request: Request) -> Orchestrator:
    """Get orchestrator from app state."""
    orchestrator: Orchestrator = request.app.state.orchestrator
    return orchestrator


def get_hub(request: Request) -> AgentHub:
    """Get agent hub from app state."""
    hub: AgentHub = request.app.state.hub
    return hub


def get_local_gateway(request: Request) -> LocalFSGateway:
    """Get the local filesystem gateway serving /objects routes."""
    gateway: ObjectStoreGateway = request.app.state.gateway
    if not isinstance(gateway, LocalFSGateway):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Object routes are only served by the local gateway",
        )
    return gateway


def require_api_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> None:
    """Validate the bearer API key when one is configured."""
    api_key: str | None = request.app.state.api_key
    if api_key is None:
        return
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not hmac.compare_digest(credentials.credentials, api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
