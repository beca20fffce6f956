"""
Authentication and permission dependencies for management users.

Management users present a bearer JWT signed (HS256) with TOKEN_SIGN_KEY.
Token issuance is handled by the management service, not here.
"""

import logging
from typing import List

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from recruitment_api.config import settings
from recruitment_api.db import get_db
from recruitment_api.services.permission_checker import is_authorized
from recruitment_api.services.recruitment_list_db import RecruitmentListDBService

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

bearer_scheme = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    """Claims of a validated management user token."""
    sub: str
    is_admin: bool = Field(default=False, alias="isAdmin")
    email: str = ""


def verify_jwt_token(token: str) -> dict:
    """Decode a management token, raising 401 when it is missing or invalid."""
    try:
        return jwt.decode(token, settings.token_sign_key, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> CurrentUser:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")

    payload = verify_jwt_token(credentials.credentials)
    if not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject")
    return CurrentUser.model_validate(payload)


def get_store(db: Session = Depends(get_db)) -> RecruitmentListDBService:
    return RecruitmentListDBService(db)


def check_permission(
    store: RecruitmentListDBService,
    user: CurrentUser,
    actions: List[str],
    resource_ids: List[str],
) -> None:
    """Raise 403 unless the user may perform one of ``actions`` on the resources."""
    if not is_authorized(store, user.sub, user.is_admin, actions, resource_ids):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not permitted")
