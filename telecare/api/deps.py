import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from telecare.core.config import settings
from telecare.core.db import get_db
from telecare.core.security import InvalidToken, decode_access_token
from telecare.models.user import RoleEnum
from telecare.services.access import Actor
from telecare.services.container import Services, build_services


bearer = HTTPBearer(auto_error=True)

async def get_current_actor(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
) -> Actor:
    """Identity comes from the token; `sub` and `role` are trusted verbatim."""
    try:
        payload = decode_access_token(creds.credentials)
    except InvalidToken as exc:
        raise HTTPException(status_code=401, detail=str(exc))

    try:
        role = RoleEnum(payload["role"])
    except ValueError:
        raise HTTPException(status_code=401, detail="Token inválido: rol desconocido")

    return Actor(id=payload["sub"], role=role)

# --- Role-based dependency ---
def require_roles(*roles: RoleEnum):
    async def _guard(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permiso denegado")
        return actor
    return _guard

# --- Services for this request ---
async def get_services(db: AsyncSession = Depends(get_db)) -> Services:
    return build_services(db)

# --- Payment provider webhook ---
async def verify_payment_webhook(
    x_webhook_secret: Optional[str] = Header(None),
) -> None:
    expected = settings.PAYMENT_WEBHOOK_SECRET
    if not expected:
        raise HTTPException(status_code=503, detail="Payment webhook is not configured")
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")
