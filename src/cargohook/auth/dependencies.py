"""FastAPI authentication dependencies."""

import secrets
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from cargohook.config import Settings, get_settings


@dataclass
class OperatorContext:
    """Authenticated operator and the tenant the request is scoped to."""

    tenant_id: str


async def get_operator_context(
    x_api_key: Annotated[str | None, Header()] = None,
    x_tenant_id: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> OperatorContext:
    """Validate the API key and resolve the tenant scope of the request."""
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    # Timing-safe comparison
    if not secrets.compare_digest(
        x_api_key.encode(), settings.root_api_key.get_secret_value().encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-Id header required",
        )

    return OperatorContext(tenant_id=x_tenant_id)


# Type alias for dependency injection
Operator = Annotated[OperatorContext, Depends(get_operator_context)]
