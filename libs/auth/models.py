from typing import Optional

from pydantic import BaseModel, Field


class ServicePrincipal(BaseModel):
    """
    Caller of an internal endpoint, as decoded from its bearer token.
    """

    subject: str = Field(..., alias="sub")
    role: str = "authenticated"
    service: Optional[str] = None
