"""
Quota router — lets a client inspect the key it is calling with.

GET /api-key/usage
  Reads the ApiKeyContext the auth middleware attached to the request;
  no extra database round trip. The call itself is counted like any
  other request, so the figures already include it.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from app.auth.dependencies import ApiKeyContext, require_api_key_context
from app.schemas.api_key import QuotaStatusOut

router = APIRouter(tags=["API Key"])

Auth = Annotated[ApiKeyContext, Depends(require_api_key_context)]


@router.get(
    "/usage",
    response_model=QuotaStatusOut,
    summary="Quota status of the calling API key",
    description=(
        "Daily and monthly limits, requests remaining after this call, "
        "and the next rollover instants (UTC). "
        "Null limits/remaining mean unlimited."
    ),
)
async def get_usage(auth: Auth) -> QuotaStatusOut:
    api_key = auth.api_key
    return QuotaStatusOut(
        key_id=api_key.key_id,
        name=api_key.name,
        daily_limit=api_key.daily_limit,
        daily_remaining=auth.remaining_daily,
        daily_reset_at=api_key.daily_reset_at,
        monthly_limit=api_key.monthly_limit,
        monthly_remaining=auth.remaining_monthly,
        monthly_reset_at=api_key.monthly_reset_at,
        total_usage=api_key.total_usage + 1,
    )
