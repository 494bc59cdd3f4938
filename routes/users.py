from fastapi import APIRouter, Depends, Request
from typing import Optional

from models.common import Page
from models.entry import UserEntry
from models.user import CurrentUser
from models.winner import WinnerResponse
from routes.auth import get_current_user

router = APIRouter()


def query_service(request: Request):
    return request.app.state.query_service


@router.get("/me/entries", response_model=Page[UserEntry])
async def my_entries(
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    current_user: CurrentUser = Depends(get_current_user),
    queries=Depends(query_service),
):
    """Entry history across every raffle, newest first"""
    page = await queries.user_entries(current_user.id, cursor, limit)
    return Page[UserEntry](
        items=[UserEntry.from_doc(e) for e in page["items"]],
        next_cursor=page["next_cursor"],
        has_more=page["has_more"],
    )


@router.get("/me/wins", response_model=Page[WinnerResponse])
async def my_wins(
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    current_user: CurrentUser = Depends(get_current_user),
    queries=Depends(query_service),
):
    page = await queries.user_wins(current_user.id, cursor, limit)
    return Page[WinnerResponse](
        items=[WinnerResponse.from_doc(w) for w in page["items"]],
        next_cursor=page["next_cursor"],
        has_more=page["has_more"],
    )
