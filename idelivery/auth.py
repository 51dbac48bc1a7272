# auth.py
from typing import NamedTuple, Optional

from fastapi import Depends, HTTPException, Request
from jose import jwt, JWTError

from idelivery.config import JWT_SECRET, JWT_ALGORITHM
from idelivery.events import get_or_create_trace_id
from idelivery.states import Role


class Actor(NamedTuple):
    id: str
    role: Role
    trace_id: str


def _decode_bearer(request: Request) -> dict:
    auth = request.headers.get("Authorization")
    if not auth or not auth.lower().startswith("bearer "):
        return {}
    token = auth.split(" ", 1)[1].strip()
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return {}


def get_trace_id(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None) or get_or_create_trace_id(request.headers.get("x-trace-id"))
    request.state.trace_id = trace_id
    return trace_id


def get_optional_user(request: Request) -> Optional[Actor]:
    """Gateway headers first, then a Bearer token; None when neither identifies the caller."""
    trace_id = get_trace_id(request)
    user_id = request.headers.get("x-user-id")
    role = request.headers.get("x-user-role")
    if not user_id or not role:
        payload = _decode_bearer(request)
        user_id = user_id or payload.get("sub")
        role = role or payload.get("role")
    if not user_id or not role:
        return None
    try:
        return Actor(id=user_id, role=Role(role.lower()), trace_id=trace_id)
    except ValueError:
        return None


def get_current_user(request: Request) -> Actor:
    user = get_optional_user(request)
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def admin_required(user: Actor = Depends(get_current_user)) -> Actor:
    if user.role != Role.ADMIN:
        raise HTTPException(status_code=403, detail="Admins only")
    return user
