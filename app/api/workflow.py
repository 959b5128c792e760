"""
Workflow API routes: step transitions, accept/reject shorthand and workflow views.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.api.deps import get_workflow_actor
from app.api.quotes import QuoteResponse
from app.core.rbac import Actor, steps_for_role
from app.db.session import get_db
from app.services import quote_lifecycle

router = APIRouter(prefix="/api/workflow", tags=["Workflow"])


# ============= SCHEMAS =============

class TransitionRequest(BaseModel):
    quote_id: int
    next_step: str = Field(..., description="Target workflow step, C1-C33")
    action: str = "transition"
    flow_type: Optional[str] = None


class AcceptRejectRequest(BaseModel):
    quote_id: int
    action: str = Field(..., description="accept or reject")
    final_price: Optional[float] = None
    reason: Optional[str] = None


# ============= ROUTES =============

@router.post("/transition")
async def transition(
    body: TransitionRequest,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Move a quote to the next workflow step."""
    quote = quote_lifecycle.transition(
        db, actor, body.quote_id, body.next_step,
        action=body.action,
        flow_type=body.flow_type,
    )
    return quote_lifecycle.workflow_state(quote)


@router.post("/accept-reject")
async def accept_reject(
    body: AcceptRejectRequest,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Role-specific accept/reject of a quote."""
    quote = quote_lifecycle.accept_reject(
        db, actor, body.quote_id, body.action,
        final_price=body.final_price,
        reason=body.reason,
    )
    return quote_lifecycle.workflow_state(quote)


@router.get("/state/{quote_id}")
async def workflow_state(
    quote_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Current step, status and full history of a quote."""
    return quote_lifecycle.get_workflow_state(db, actor, quote_id)


@router.get("/latest")
async def latest_workflow(
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """The calling customer's most recent quote workflow."""
    return {"workflow": quote_lifecycle.latest_for_customer(db, actor)}


@router.get("/pending-actions")
async def pending_actions(
    limit: Optional[int] = Query(None, ge=1, le=500),
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Quotes waiting on the caller's role."""
    quotes = quote_lifecycle.pending_actions_for_role(db, actor, limit=limit)
    return {
        "role": actor.role.value,
        "steps": sorted((s.value for s in steps_for_role(actor.role)), key=lambda v: int(v[1:])),
        "quotes": [QuoteResponse.model_validate(q).model_dump(mode="json") for q in quotes],
    }
