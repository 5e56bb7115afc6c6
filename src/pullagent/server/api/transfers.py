"""Transfer API routes."""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status

from pullagent.server.api.deps import get_hub, get_orchestrator, require_api_key
from pullagent.server.gateway import GatewayError
from pullagent.server.hub import AgentHub
from pullagent.server.orchestrator import (
    CommandDispatchError,
    CredentialIssueError,
    InvalidRequestError,
    Orchestrator,
    RecordPersistenceError,
)
from pullagent.server.schemas import (
    AgentsResponse,
    ArtifactResponse,
    TransferCreateRequest,
    TransferResponse,
    credential_to_artifact,
    transfer_to_response,
)

router = APIRouter(prefix="/api", tags=["transfers"], dependencies=[Depends(require_api_key)])


@router.get("/agents", response_model=AgentsResponse)
def list_agents(hub: AgentHub = Depends(get_hub)) -> AgentsResponse:
    """List agents currently connected."""
    return AgentsResponse(agents=hub.connected_agents())


@router.post(
    "/agents/{agent_id}/transfers",
    response_model=TransferResponse,
    status_code=status.HTTP_201_CREATED,
)
def trigger_transfer(
    agent_id: str,
    request: TransferCreateRequest | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TransferResponse:
    """Ask an agent to upload its file."""
    request = request or TransferCreateRequest()
    meta = {
        key: value
        for key, value in (("requested_by", request.requested_by), ("reason", request.reason))
        if value
    }

    try:
        record = orchestrator.trigger(agent_id, request.display_name, meta or None)
    except InvalidRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except CredentialIssueError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    except CommandDispatchError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"{e} (transfer {e.transfer_id} left pending)",
        ) from e
    except RecordPersistenceError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        ) from e
    return transfer_to_response(record)


@router.get("/agents/{agent_id}/transfers", response_model=list[TransferResponse])
def list_transfers(
    agent_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[TransferResponse]:
    """List an agent's transfers, newest first."""
    return [transfer_to_response(r) for r in orchestrator.list_transfers(agent_id)]


# Note: must be registered before /transfers/{transfer_id}
@router.get("/transfers/stale", response_model=list[TransferResponse])
def list_stale_transfers(
    older_than_seconds: int = Query(default=900, ge=0),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[TransferResponse]:
    """List transfers stuck in pending."""
    records = orchestrator.list_stale_pending(timedelta(seconds=older_than_seconds))
    return [transfer_to_response(r) for r in records]


@router.get("/transfers/{transfer_id}", response_model=TransferResponse)
def get_transfer(
    transfer_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TransferResponse:
    """Get transfer status."""
    record = orchestrator.get_status(transfer_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Transfer not found: {transfer_id}",
        )
    return transfer_to_response(record)


@router.get("/transfers/{transfer_id}/artifact", response_model=ArtifactResponse)
def get_artifact(
    transfer_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ArtifactResponse:
    """Get a fresh download URL for a verified transfer."""
    try:
        credential = orchestrator.get_artifact_url(transfer_id)
    except GatewayError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    if credential is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Artifact not available or transfer not verified",
        )
    return credential_to_artifact(
        transfer_id, credential, orchestrator.config.read_credential_ttl
    )
