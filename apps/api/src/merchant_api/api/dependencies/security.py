from fastapi import Header, HTTPException, status

from merchant_api.core.settings import settings


async def require_internal_secret(x_internal_secret: str = Header("", alias="X-Internal-Secret")) -> None:
    if not settings.internal_api_secret:
        return

    if x_internal_secret != settings.internal_api_secret:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal secret",
        )


async def require_organization_id(x_organization_id: str = Header("", alias="X-Organization-Id")) -> str:
    organization_id = x_organization_id.strip()
    if not organization_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing organization context",
        )
    return organization_id
