"""
Workflow history recorder.

Every hand-off on a quote appends one WorkflowEvent row and moves the quote's
current_workflow_step. Callers pass the same session that performs the status
change, so the history entry commits or rolls back together with it.
"""
from typing import List, Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.rbac import Actor, WorkflowStep
from app.core.security import get_role_value
from app.db.models import Quote, WorkflowEvent, utcnow


def _step_value(step: Union[str, WorkflowStep, None]) -> Optional[str]:
    if step is None:
        return None
    return step.value if isinstance(step, WorkflowStep) else str(step)


def next_sequence(db: Session, quote_id: int) -> int:
    """Next history position for a quote; caller must hold the quote row lock."""
    current = db.query(func.max(WorkflowEvent.sequence)).filter(
        WorkflowEvent.quote_id == quote_id
    ).scalar()
    return (current or 0) + 1


def append(
    db: Session,
    quote: Quote,
    to_step: Union[str, WorkflowStep],
    actor: Actor,
    action: str = "transition",
    details: Optional[dict] = None,
    initial: bool = False,
) -> WorkflowEvent:
    """
    Record a hand-off and advance the quote's step.

    The from_step is taken from the quote as loaded in this transaction, or
    left empty for the entry that opens the history (``initial``). The quote
    must already be flushed so it has an id.
    """
    event = WorkflowEvent(
        quote_id=quote.id,
        sequence=next_sequence(db, quote.id),
        from_step=None if initial else quote.current_workflow_step,
        to_step=_step_value(to_step),
        action=action or "transition",
        actor_role=get_role_value(actor.role),
        actor_id=actor.user_id,
        details=details,
        created_at=utcnow(),
    )
    db.add(event)
    quote.current_workflow_step = event.to_step
    # Flush so a second append in the same transaction sees this sequence
    db.flush()
    return event


def history(db: Session, quote_id: int) -> List[WorkflowEvent]:
    return db.query(WorkflowEvent).filter(
        WorkflowEvent.quote_id == quote_id
    ).order_by(WorkflowEvent.sequence).all()


def serialize_event(event: WorkflowEvent) -> dict:
    """History entry in the shape clients have always consumed."""
    created_at = event.created_at
    return {
        "sequence": event.sequence,
        "at": created_at.isoformat() if created_at else None,
        "fromStep": event.from_step,
        "toStep": event.to_step,
        "action": event.action,
        "actorRole": get_role_value(event.actor_role),
        "actorUserId": event.actor_id,
        "details": event.details,
    }
