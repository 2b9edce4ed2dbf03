from dataclasses import dataclass
from fastapi import Header, HTTPException


ROLE_PASSENGER = "passenger"
ROLE_DRIVER = "driver"
ROLE_BOTH = "both"
ROLE_ADMIN = "admin"
ROLE_SYSTEM = "system"

ROLES = {ROLE_PASSENGER, ROLE_DRIVER, ROLE_BOTH, ROLE_ADMIN, ROLE_SYSTEM}
DRIVER_ROLES = {ROLE_DRIVER, ROLE_BOTH}


@dataclass(frozen=True)
class Caller:
    """Identity resolved by the auth layer in front of this service."""
    user_id: int
    role: str

    @property
    def can_drive(self) -> bool:
        return self.role in DRIVER_ROLES

    @property
    def is_operator(self) -> bool:
        return self.role in (ROLE_ADMIN, ROLE_SYSTEM)


SYSTEM = Caller(user_id=0, role=ROLE_SYSTEM)


def get_caller(
    x_user_id: str = Header(None, alias="X-User-ID"),
    x_user_role: str = Header(None, alias="X-User-Role"),
) -> Caller:
    if not x_user_id or not x_user_role:
        raise HTTPException(401, "X-User-ID and X-User-Role headers are required")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise HTTPException(400, "X-User-ID must be an integer")
    role = x_user_role.lower()
    if role not in ROLES:
        raise HTTPException(400, f"unknown role {x_user_role}")
    return Caller(user_id=user_id, role=role)
