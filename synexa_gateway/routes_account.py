"""Account endpoint: plan, credits, today's usage and limits."""
from fastapi import APIRouter, Depends, Request

from synexa_gateway.auth import get_current_account

router = APIRouter(tags=["account"])


@router.get("/account")
async def get_account(request: Request, account_id: str = Depends(get_current_account)):
    """Read-only view of the caller's ledger state. Limits of ``null`` mean unlimited."""
    return request.app.state.services.ledger.account_status(account_id)
