import uuid
import os
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request
from jose import jwt, JWTError

JWT_SECRET = os.getenv("JWT_SECRET", "demo_secret")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")


def decode_jwt_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None


async def get_optional_user(request: Request) -> Dict[str, Optional[str]]:
    """
    Resolve the caller from the bearer token issued by the auth-service.
    Returns a user dict with id/role set to None when no valid token is present.
    """
    auth = request.headers.get("Authorization") or request.headers.get("authorization")
    trace_id = getattr(request.state, "trace_id", None) or str(uuid.uuid4())

    if not auth or not auth.lower().startswith("bearer "):
        return {"id": None, "email": None, "role": None, "trace_id": trace_id}

    token = auth.split(" ", 1)[1].strip()
    payload = decode_jwt_token(token)

    if not payload:
        return {"id": None, "email": None, "role": None, "trace_id": trace_id}

    role = payload.get("role")
    return {
        "id": str(payload["sub"]) if payload.get("sub") is not None else None,
        "email": payload.get("email"),
        "role": role.lower() if isinstance(role, str) else None,
        "trace_id": trace_id,
    }


async def get_current_user(user=Depends(get_optional_user)) -> Dict[str, Optional[str]]:
    if not user.get("id") or not user.get("role"):
        raise HTTPException(status_code=401, detail="Access token required")
    return user


def require_roles(*roles: str):
    """Dependency factory: only let the listed roles through."""
    allowed = {r.lower() for r in roles}

    async def checker(user=Depends(get_current_user)):
        if user["role"] not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return checker
