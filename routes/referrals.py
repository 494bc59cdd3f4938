from fastapi import APIRouter, Depends, Query, Request
from typing import List, Optional

from models.common import Page
from models.referral import CommissionResponse, LevelStats, ReferralNode, ReferralStats, SetReferrer
from models.user import CurrentUser, UserResponse
from routes.auth import get_current_user

router = APIRouter()


def referral_service(request: Request):
    return request.app.state.referral_service


@router.post("/referrer", response_model=UserResponse)
async def set_referrer(
    body: SetReferrer,
    current_user: CurrentUser = Depends(get_current_user),
    service=Depends(referral_service),
):
    user = await service.set_referrer(current_user.id, body.referrer, body.referral_code)
    return UserResponse.from_doc(user)


@router.get("/stats", response_model=ReferralStats)
async def referral_stats(current_user: CurrentUser = Depends(get_current_user), service=Depends(referral_service)):
    return await service.referral_stats(current_user.id)


@router.get("/levels", response_model=List[LevelStats])
async def commissions_by_level(current_user: CurrentUser = Depends(get_current_user),
                               service=Depends(referral_service)):
    return await service.commissions_by_level(current_user.id)


@router.get("/network")
async def network_structure(current_user: CurrentUser = Depends(get_current_user),
                            service=Depends(referral_service)):
    return await service.network_structure(current_user.id)


@router.get("/tree", response_model=ReferralNode)
async def referral_tree(
    depth: int = Query(3, ge=1, le=5),
    current_user: CurrentUser = Depends(get_current_user),
    service=Depends(referral_service),
):
    await service.ensure_user(current_user.id)
    return await service.referral_tree(current_user.id, depth)


@router.get("/commissions", response_model=Page[CommissionResponse])
async def list_commissions(
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    current_user: CurrentUser = Depends(get_current_user),
    service=Depends(referral_service),
):
    page = await service.list_commissions(current_user.id, cursor, limit)
    return Page[CommissionResponse](
        items=[CommissionResponse.from_doc(c) for c in page["items"]],
        next_cursor=page["next_cursor"],
        has_more=page["has_more"],
    )
