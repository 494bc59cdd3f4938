from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from typing import List, Optional
import hmac
import logging

from models.common import Page
from models.entry import EntryResponse, EntrySubmit, EntryValidate
from models.raffle import (
    DrawReadiness,
    EntryEligibility,
    Participant,
    RaffleResponse,
    RaffleStats,
    RaffleStatus,
    RaffleType,
    RandomnessCallback,
)
from models.user import CurrentUser
from models.winner import WinnerResponse
from routes.auth import get_current_user

router = APIRouter()
logger = logging.getLogger(__name__)


def raffle_service(request: Request):
    return request.app.state.raffle_service


def query_service(request: Request):
    return request.app.state.query_service


@router.get("", response_model=Page[RaffleResponse])
async def list_raffles(
    status_filter: Optional[RaffleStatus] = Query(None, alias="status"),
    raffle_type: Optional[RaffleType] = Query(None, alias="type"),
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    service=Depends(raffle_service),
):
    page = await service.list_raffles(
        status_filter.value if status_filter else None,
        raffle_type.value if raffle_type else None,
        cursor,
        limit,
    )
    return Page[RaffleResponse](
        items=[RaffleResponse.from_doc(r) for r in page["items"]],
        next_cursor=page["next_cursor"],
        has_more=page["has_more"],
    )


@router.post("/randomness/callback")
async def randomness_callback(
    body: RandomnessCallback,
    request: Request,
    x_callback_secret: str = Header(""),
    service=Depends(raffle_service),
):
    """Delivery endpoint for the randomness oracle"""
    secret = request.app.state.settings.randomness_callback_secret
    if not secret or not hmac.compare_digest(secret, x_callback_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid callback secret")

    result = await service.fulfill_randomness(body.request_id, body.random_value)
    return {"raffle_id": result["raffle_id"], "status": result["status"], "winners": len(result["winners"])}


@router.get("/{raffle_id}", response_model=RaffleResponse)
async def get_raffle(raffle_id: str, service=Depends(raffle_service)):
    raffle = await service.get_raffle(raffle_id)
    return RaffleResponse.from_doc(raffle)


@router.get("/{raffle_id}/participants", response_model=List[Participant])
async def get_participants(raffle_id: str, limit: Optional[int] = None, queries=Depends(query_service)):
    return await queries.get_participants(raffle_id, limit)


@router.get("/{raffle_id}/winners", response_model=List[WinnerResponse])
async def get_winners(raffle_id: str, service=Depends(raffle_service)):
    await service.get_raffle(raffle_id)
    winners = await service.get_winners(raffle_id)
    return [WinnerResponse.from_doc(w) for w in winners]


@router.get("/{raffle_id}/stats", response_model=RaffleStats)
async def get_stats(raffle_id: str, queries=Depends(query_service)):
    return await queries.raffle_stats(raffle_id)


@router.get("/{raffle_id}/draw-ready", response_model=DrawReadiness)
async def draw_ready(raffle_id: str, service=Depends(raffle_service)):
    return await service.is_ready_for_draw(raffle_id)


@router.get("/{raffle_id}/draw")
async def draw_status(raffle_id: str, service=Depends(raffle_service)):
    result = await service.check_draw(raffle_id)
    result["winners"] = [WinnerResponse.from_doc(w) for w in result["winners"]]
    return result


@router.post("/{raffle_id}/validate", response_model=EntryEligibility)
async def validate_entry(
    raffle_id: str,
    body: EntryValidate,
    current_user: CurrentUser = Depends(get_current_user),
    service=Depends(raffle_service),
):
    return await service.validate_entry(raffle_id, current_user.id, body.ticket_count)


@router.post("/{raffle_id}/enter", response_model=EntryResponse, status_code=status.HTTP_201_CREATED)
async def enter_raffle(
    raffle_id: str,
    body: EntrySubmit,
    current_user: CurrentUser = Depends(get_current_user),
    service=Depends(raffle_service),
):
    entry = await service.submit_entry(raffle_id, current_user.id, body.ticket_count, body.tx_ref)
    return EntryResponse.from_doc(entry)


@router.get("/{raffle_id}/entries/me", response_model=Page[EntryResponse])
async def my_entries(
    raffle_id: str,
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    current_user: CurrentUser = Depends(get_current_user),
    queries=Depends(query_service),
):
    page = await queries.list_entries(raffle_id=raffle_id, participant=current_user.id, cursor=cursor, limit=limit)
    return Page[EntryResponse](
        items=[EntryResponse.from_doc(e) for e in page["items"]],
        next_cursor=page["next_cursor"],
        has_more=page["has_more"],
    )
