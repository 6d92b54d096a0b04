"""Consent routes - data for the consent UI and the user's decision"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from authserver.core.database import get_db
from authserver.schemas.oauth import ConsentDecision, ConsentDecisionResponse, ConsentPromptResponse
from authserver.services.authorization_service import authorization_service
from authserver.api.deps import get_client_ip, get_session_user
from authserver.models.user import User

router = APIRouter()


@router.get("", response_model=ConsentPromptResponse)
def get_consent_request(
    request_id: str = Query(..., min_length=1),
    current_user: User = Depends(get_session_user),
    db: Session = Depends(get_db)
):
    """
    Pending authorization request awaiting the user's decision

    Args:
        request_id: Identifier handed to the consent UI by /oauth/authorize
        current_user: Signed-in user (must own the request)
        db: Database session

    Returns:
        Application metadata and requested scope descriptions
    """
    return authorization_service.consent_prompt(db, request_id, current_user)


@router.post("", response_model=ConsentDecisionResponse)
def submit_consent_decision(
    decision: ConsentDecision,
    request: Request,
    current_user: User = Depends(get_session_user),
    db: Session = Depends(get_db)
):
    """
    Record approval or denial

    The UI performs the returned redirect itself.
    """
    redirect_url = authorization_service.decide(
        db,
        decision.request_id,
        decision.approved,
        current_user,
        ip_address=get_client_ip(request),
    )
    return ConsentDecisionResponse(redirect_url=redirect_url)
