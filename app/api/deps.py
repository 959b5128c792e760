"""
Shared API dependencies.
"""
from fastapi import Depends
from sqlalchemy.orm import Session

from app.core.rbac import Actor, get_current_actor
from app.db.session import get_db
from app.services import directory


async def get_workflow_actor(
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> Actor:
    """Authenticated actor, mirrored into the users table on first sight."""
    directory.ensure_user(db, actor)
    return actor
