import logging
from typing import Optional, Union

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError

from arksql.core.config import settings
from arksql.policy.access import CallerContext
from arksql.policy.roles import Role, role_from_claim

logger = logging.getLogger(__name__)

# Token is optional: without one the configured static caller is used (when allowed)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


class TokenPayload(BaseModel):
    sub: str
    role: Optional[Union[int, str]] = None
    diocese_id: Optional[int] = None
    diocese_name: Optional[str] = None
    testing_center_id: Optional[int] = None


def static_caller() -> CallerContext:
    """Caller built from the DEFAULT_* settings, for single-tenant deployments and local runs."""
    role = role_from_claim(settings.DEFAULT_CALLER_ROLE) or Role.SCHOOL_MANAGER
    return CallerContext(
        tenant_id=settings.DEFAULT_TENANT_ID,
        tenant_name=settings.DEFAULT_TENANT_NAME,
        sub_tenant_id=settings.DEFAULT_SUB_TENANT_ID if role == Role.SCHOOL_MANAGER else None,
        role=role,
        user_id="static",
    )


def caller_from_payload(token_data: TokenPayload) -> CallerContext:
    """Map validated claims to a caller. Raises 403 for roles with no access to the assistant."""
    role = role_from_claim(token_data.role)
    if role is None:
        logger.warning(f"[Auth] User {token_data.sub} has role '{token_data.role}' with no assistant access.")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Your role does not have access to this assistant.")
    missing_claim = None
    if role != Role.SUPER_ADMIN and token_data.diocese_id is None:
        missing_claim = "diocese_id"
    elif role == Role.SCHOOL_MANAGER and token_data.testing_center_id is None:
        missing_claim = "testing_center_id"
    if missing_claim:
        logger.warning(f"[Auth] Token for user {token_data.sub} ({role.value}) carries no {missing_claim}.")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return CallerContext(
        tenant_id=token_data.diocese_id,
        tenant_name=token_data.diocese_name,
        sub_tenant_id=token_data.testing_center_id,
        role=role,
        user_id=token_data.sub,
    )


async def get_current_caller(token: Optional[str] = Depends(oauth2_scheme)) -> CallerContext:
    """
    Dependency resolving the caller context for a request.
    Raises HTTPException 401 for invalid/expired tokens, 403 for no-access roles.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not token:
        if settings.ALLOW_STATIC_CALLER:
            return static_caller()
        raise credentials_exception
    if not settings.SECRET_KEY:
        logger.error("[Auth] Bearer token received but SECRET_KEY is not configured.")
        raise credentials_exception

    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": True},
        )
        token_data = TokenPayload(**payload)
    except JWTError as e:
        logger.warning(f"[Auth] Token validation failed: {e}")
        raise credentials_exception from e
    except ValidationError as e:
        logger.warning(f"[Auth] Token payload validation failed: {e}")
        raise credentials_exception from e

    if not token_data.sub:
        logger.warning("[Auth] Token validation failed: 'sub' claim missing.")
        raise credentials_exception
    return caller_from_payload(token_data)
