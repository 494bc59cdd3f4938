from fastapi import APIRouter, Body, Depends, Request, status
from typing import List, Optional
import logging

from models.common import DashboardStats
from models.raffle import CancelRequest, RaffleCreate, RaffleResponse
from models.user import CurrentUser
from models.winner import PayoutCommand, PayoutStatus, WinnerResponse
from routes.auth import get_current_admin_user

router = APIRouter(dependencies=[Depends(get_current_admin_user)])
logger = logging.getLogger(__name__)


def raffle_service(request: Request):
    return request.app.state.raffle_service


def payout_service(request: Request):
    return request.app.state.payout_service


def query_service(request: Request):
    return request.app.state.query_service


# Raffle lifecycle

@router.post("/raffles", response_model=RaffleResponse, status_code=status.HTTP_201_CREATED)
async def create_raffle(
    body: RaffleCreate,
    current_user: CurrentUser = Depends(get_current_admin_user),
    service=Depends(raffle_service),
):
    raffle = await service.create_raffle(body.model_dump())
    logger.info(f"Raffle {raffle['_id']} created by {current_user.id}")
    return RaffleResponse.from_doc(raffle)


@router.post("/raffles/{raffle_id}/activate", response_model=RaffleResponse)
async def activate_raffle(raffle_id: str, service=Depends(raffle_service)):
    return RaffleResponse.from_doc(await service.activate_raffle(raffle_id))


@router.post("/raffles/{raffle_id}/pause", response_model=RaffleResponse)
async def pause_raffle(raffle_id: str, service=Depends(raffle_service)):
    return RaffleResponse.from_doc(await service.pause_raffle(raffle_id))


@router.post("/raffles/{raffle_id}/resume", response_model=RaffleResponse)
async def resume_raffle(raffle_id: str, service=Depends(raffle_service)):
    return RaffleResponse.from_doc(await service.resume_raffle(raffle_id))


@router.post("/raffles/{raffle_id}/cancel", response_model=RaffleResponse)
async def cancel_raffle(raffle_id: str, body: CancelRequest, service=Depends(raffle_service)):
    return RaffleResponse.from_doc(await service.cancel_raffle(raffle_id, body.reason))


@router.post("/raffles/{raffle_id}/emergency-cancel", response_model=RaffleResponse)
async def emergency_cancel(raffle_id: str, body: CancelRequest, service=Depends(raffle_service)):
    return RaffleResponse.from_doc(await service.emergency_cancel(raffle_id, body.reason))


@router.post("/raffles/{raffle_id}/close", response_model=RaffleResponse)
async def close_raffle(raffle_id: str, service=Depends(raffle_service)):
    return RaffleResponse.from_doc(await service.close_raffle(raffle_id))


@router.post("/raffles/{raffle_id}/draw")
async def trigger_draw(raffle_id: str, service=Depends(raffle_service)):
    result = await service.trigger_draw(raffle_id)
    result["winners"] = [WinnerResponse.from_doc(w) for w in result["winners"]]
    return result


@router.post("/raffles/{raffle_id}/refunds")
async def process_refunds(raffle_id: str, service=Depends(raffle_service)):
    return await service.process_refunds(raffle_id)


@router.get("/raffles/{raffle_id}/reconcile")
async def reconcile(raffle_id: str, queries=Depends(query_service)):
    return await queries.reconcile_totals(raffle_id)


# Payouts

@router.post("/payouts")
async def payout_command(command: PayoutCommand = Body(...), payouts=Depends(payout_service)):
    result = await payouts.execute(command)
    if "_id" in result:
        return WinnerResponse.from_doc(result)
    return result


@router.get("/payouts", response_model=List[WinnerResponse])
async def list_payouts(status_filter: Optional[PayoutStatus] = None, payouts=Depends(payout_service)):
    docs = await payouts.list_payouts(status_filter.value if status_filter else None)
    return [WinnerResponse.from_doc(p) for p in docs]


@router.get("/payouts/overview")
async def payout_overview(payouts=Depends(payout_service)):
    return await payouts.payout_overview()


@router.get("/payouts/raffles/{raffle_id}")
async def raffle_payouts(raffle_id: str, payouts=Depends(payout_service)):
    summary = await payouts.payout_summary(raffle_id)
    summary["payouts"] = [WinnerResponse.from_doc(p) for p in summary["payouts"]]
    return summary


@router.get("/dashboard", response_model=DashboardStats)
async def dashboard(queries=Depends(query_service)):
    return await queries.dashboard_stats()
