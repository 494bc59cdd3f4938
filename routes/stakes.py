from fastapi import APIRouter, Depends, Request, status
from typing import Optional

from models.common import Page
from models.stake import StakeCreate, StakeResponse, StakeTransaction
from models.user import CurrentUser
from routes.auth import get_current_user
from services.accrual import stake_reward
from services.errors import OwnershipError

router = APIRouter()


def stake_service(request: Request):
    return request.app.state.stake_service


@router.post("", response_model=StakeResponse, status_code=status.HTTP_201_CREATED)
async def create_stake(
    body: StakeCreate,
    current_user: CurrentUser = Depends(get_current_user),
    service=Depends(stake_service),
):
    stake = await service.create_stake(current_user.id, body.amount)
    return StakeResponse.from_doc(stake)


@router.post("/{stake_id}/transaction", response_model=StakeResponse)
async def submit_transaction(
    stake_id: str,
    body: StakeTransaction,
    current_user: CurrentUser = Depends(get_current_user),
    service=Depends(stake_service),
):
    stake = await service.submit_stake_transaction(stake_id, body.tx_ref, current_user.id)
    return StakeResponse.from_doc(stake, stake_reward(stake, service.now()))


@router.get("", response_model=Page[StakeResponse])
async def my_stakes(
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    current_user: CurrentUser = Depends(get_current_user),
    service=Depends(stake_service),
):
    page = await service.list_stakes(current_user.id, cursor, limit)
    return Page[StakeResponse](
        items=[StakeResponse.from_doc(s, s["accrued_reward"]) for s in page["items"]],
        next_cursor=page["next_cursor"],
        has_more=page["has_more"],
    )


@router.get("/{stake_id}", response_model=StakeResponse)
async def get_stake(
    stake_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service=Depends(stake_service),
):
    stake = await service.get_stake(stake_id)
    if stake["owner"] != current_user.id:
        raise OwnershipError(f"Stake {stake_id} does not belong to {current_user.id}")
    return StakeResponse.from_doc(stake, stake_reward(stake, service.now()))
