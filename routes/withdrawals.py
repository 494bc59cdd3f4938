from fastapi import APIRouter, Depends, Request, status
from typing import Optional

from models.common import Page
from models.user import CurrentUser
from models.withdrawal import AvailableBalance, WithdrawalCreate, WithdrawalResponse
from routes.auth import get_current_user

router = APIRouter()


def withdrawal_service(request: Request):
    return request.app.state.withdrawal_service


@router.get("/available", response_model=AvailableBalance)
async def available_balance(
    current_user: CurrentUser = Depends(get_current_user),
    service=Depends(withdrawal_service),
):
    return await service.balance_breakdown(current_user.id)


@router.post("", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED)
async def create_withdrawal(
    body: WithdrawalCreate,
    current_user: CurrentUser = Depends(get_current_user),
    service=Depends(withdrawal_service),
):
    withdrawal = await service.create_withdrawal(current_user.id, body.destination, body.amount)
    return WithdrawalResponse.from_doc(withdrawal)


@router.get("", response_model=Page[WithdrawalResponse])
async def withdrawal_history(
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    current_user: CurrentUser = Depends(get_current_user),
    service=Depends(withdrawal_service),
):
    page = await service.withdrawal_history(current_user.id, cursor, limit)
    return Page[WithdrawalResponse](
        items=[WithdrawalResponse.from_doc(w) for w in page["items"]],
        next_cursor=page["next_cursor"],
        has_more=page["has_more"],
    )
