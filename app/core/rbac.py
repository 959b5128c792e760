"""
Role-Based Access Control: roles, workflow step codes and the step gate.

The gate is a single immutable table of which role may move a quote into
which workflow step. Every mutating workflow operation names its step and is
checked here before it touches the database.
"""
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional, Union

from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPAuthorizationCredentials

from app.core.errors import PermissionDenied
from app.core.security import decode_token, security


class Role(str, Enum):
    CUSTOMER = "customer"
    PURCHASE_SUPPORT = "purchase_support"
    SALES_SUPPORT = "sales_support"
    SUPERVISOR = "supervisor"
    WAREHOUSE = "warehouse"
    ACCOUNTS = "accounts"
    ADMIN = "admin"


class WorkflowStep(str, Enum):
    """Stable step codes persisted in quote history."""
    C1 = "C1"
    C2 = "C2"
    C3 = "C3"
    C4 = "C4"
    C5 = "C5"
    C6 = "C6"
    C7 = "C7"
    C8 = "C8"
    C9 = "C9"
    C10 = "C10"
    C11 = "C11"
    C12 = "C12"
    C13 = "C13"
    C14 = "C14"
    C15 = "C15"
    C16 = "C16"
    C17 = "C17"
    C18 = "C18"
    C19 = "C19"
    C20 = "C20"
    C21 = "C21"
    C22 = "C22"
    C23 = "C23"
    C24 = "C24"
    C25 = "C25"
    C26 = "C26"
    C27 = "C27"
    C28 = "C28"
    C29 = "C29"
    C30 = "C30"
    C31 = "C31"
    C32 = "C32"
    C33 = "C33"


S = WorkflowStep

ROLE_ALLOWED_STEPS: Mapping[Role, FrozenSet[WorkflowStep]] = MappingProxyType({
    Role.CUSTOMER: frozenset({S.C1, S.C13, S.C14, S.C15, S.C16, S.C21, S.C25, S.C28, S.C31}),
    Role.PURCHASE_SUPPORT: frozenset({S.C2, S.C3, S.C4, S.C9, S.C10}),
    Role.WAREHOUSE: frozenset({S.C5, S.C6, S.C7, S.C8, S.C24, S.C29, S.C30, S.C33}),
    Role.SALES_SUPPORT: frozenset({S.C11, S.C12}),
    Role.SUPERVISOR: frozenset({S.C17, S.C18, S.C19, S.C20, S.C22, S.C23, S.C26, S.C27, S.C32}),
    Role.ACCOUNTS: frozenset(),
    Role.ADMIN: frozenset(),
})

# Entering either of these steps confirms the booking
BOOKING_CONFIRMATION_STEPS: FrozenSet[WorkflowStep] = frozenset({S.C17, S.C19})


def _coerce_step(step: Union[str, WorkflowStep]) -> Optional[WorkflowStep]:
    try:
        return WorkflowStep(step)
    except ValueError:
        return None


def _coerce_role(role: Union[str, Role]) -> Optional[Role]:
    try:
        return Role(role)
    except ValueError:
        return None


def is_allowed(role: Union[str, Role], step: Union[str, WorkflowStep]) -> bool:
    """Pure membership check; unknown roles and unmapped steps are denied."""
    role_key = _coerce_role(role)
    step_key = _coerce_step(step)
    if role_key is None or step_key is None:
        return False
    return step_key in ROLE_ALLOWED_STEPS.get(role_key, frozenset())


def require_step(role: Union[str, Role], step: Union[str, WorkflowStep]) -> WorkflowStep:
    """Raise PermissionDenied unless ``role`` may move a quote into ``step``."""
    if not is_allowed(role, step):
        role_value = role.value if isinstance(role, Role) else role
        step_value = step.value if isinstance(step, WorkflowStep) else step
        raise PermissionDenied(
            f"Role '{role_value}' is not allowed to perform step '{step_value}'",
            role=role_value,
            step=step_value,
        )
    return WorkflowStep(step)


def steps_for_role(role: Union[str, Role]) -> FrozenSet[WorkflowStep]:
    role_key = _coerce_role(role)
    if role_key is None:
        return frozenset()
    return ROLE_ALLOWED_STEPS.get(role_key, frozenset())


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of a workflow operation."""
    user_id: int
    role: Role
    email: Optional[str] = None


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> Actor:
    """Build the acting user from the bearer token."""
    payload = decode_token(credentials.credentials)

    role = _coerce_role(payload.get("role", ""))
    if role is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid token: unknown role",
        )

    return Actor(user_id=int(payload["sub"]), role=role, email=payload.get("email"))


class RoleChecker:
    """Dependency restricting an endpoint to a set of roles."""

    def __init__(self, *roles: Role):
        self.roles = frozenset(roles)

    async def __call__(self, actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in self.roles:
            allowed = ", ".join(sorted(r.value for r in self.roles))
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required: {allowed}",
            )
        return actor


# Convenience dependencies for read endpoints
require_internal = RoleChecker(
    Role.PURCHASE_SUPPORT, Role.SALES_SUPPORT, Role.SUPERVISOR,
    Role.WAREHOUSE, Role.ACCOUNTS, Role.ADMIN,
)
require_accounts = RoleChecker(Role.ACCOUNTS, Role.ADMIN)
