from typing import Annotated
import uuid

from fastapi import APIRouter, Depends, HTTPException, status, Request
from pydantic import BaseModel

from app.core.security import verify_token
from app.routers.deps import AppSettings

router = APIRouter()


class IdentityResponse(BaseModel):
    parent_id: uuid.UUID


# Dependency to get the guardian behind the request. Tokens are issued by the
# upstream auth service; we only check them.
async def get_current_parent(request: Request, settings: AppSettings) -> uuid.UUID:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    token = auth_header.split(" ")[1]
    payload = verify_token(token, settings, "access")
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    try:
        return uuid.UUID(payload.sub)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token subject",
        )


CurrentParent = Annotated[uuid.UUID, Depends(get_current_parent)]


@router.get("/me", response_model=IdentityResponse)
async def whoami(parent_id: CurrentParent):
    """Return the guardian id the request is authenticated as."""
    return IdentityResponse(parent_id=parent_id)
