"""
Credential settings endpoints. Keys are held in memory only and never
returned by the API.
"""

from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from daisy.services.workflow_session import WorkflowSession, get_session

router = APIRouter(prefix="/credentials", tags=["credentials"])


class CredentialRequest(BaseModel):
    api_key: Optional[str] = None


class CredentialStatus(BaseModel):
    configured: Dict[str, bool]


@router.get("", response_model=CredentialStatus)
async def get_credential_status(session: WorkflowSession = Depends(get_session)):
    return CredentialStatus(configured=session.credentials.configured())


@router.put("/{provider}", response_model=CredentialStatus)
async def set_credential(
    provider: str,
    request: CredentialRequest,
    session: WorkflowSession = Depends(get_session),
):
    """Set (or, with an empty key, clear) the API key for a provider."""
    try:
        session.credentials.set(provider, request.api_key)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return CredentialStatus(configured=session.credentials.configured())
