from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import ValidationError

from libs.auth.models import ServicePrincipal
from libs.common.config import get_settings

security = HTTPBearer()


async def get_service_principal(
    token: Annotated[HTTPAuthorizationCredentials, Depends(security)]
) -> ServicePrincipal:
    """
    Validate an HS256 service token and return its principal.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    secret = get_settings().INTERNAL_JWT_SECRET
    if not secret:
        raise credentials_exception

    try:
        payload = jwt.decode(
            token.credentials,
            secret,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
        return ServicePrincipal(**payload)
    except (JWTError, ValidationError):
        raise credentials_exception


async def require_service_role(
    principal: Annotated[ServicePrincipal, Depends(get_service_principal)]
) -> ServicePrincipal:
    """
    Only other services (and operators holding a service token) may call
    internal endpoints.
    """
    if principal.role != "service_role":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Service role required",
        )
    return principal
