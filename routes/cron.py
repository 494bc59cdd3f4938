from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
import hmac
import logging

router = APIRouter()
logger = logging.getLogger(__name__)


async def verify_cron_secret(request: Request, x_cron_secret: str = Header("")):
    secret = request.app.state.settings.cron_secret
    if not secret or not hmac.compare_digest(secret, x_cron_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")


@router.post("/raffles/activate", dependencies=[Depends(verify_cron_secret)])
async def activate_raffles(request: Request):
    service = request.app.state.raffle_service
    activated = await service.activate_due_raffles()
    ending = await service.mark_ending_raffles()
    return {"activated": activated, "ending": ending}


@router.post("/raffles/close", dependencies=[Depends(verify_cron_secret)])
async def close_expired(request: Request):
    return await request.app.state.raffle_service.close_expired_raffles()


@router.post("/raffles/draws", dependencies=[Depends(verify_cron_secret)])
async def poll_draws(request: Request):
    return await request.app.state.raffle_service.poll_pending_draws()


@router.post("/raffles/refunds", dependencies=[Depends(verify_cron_secret)])
async def process_refunds(request: Request):
    return await request.app.state.raffle_service.process_pending_refunds()


@router.post("/payouts/resolve", dependencies=[Depends(verify_cron_secret)])
async def resolve_payouts(request: Request):
    return await request.app.state.payout_service.resolve_processing()


@router.post("/stakes/verify", dependencies=[Depends(verify_cron_secret)])
async def verify_stakes(request: Request):
    return await request.app.state.stake_service.verify_pending_stakes()


@router.post("/stakes/complete", dependencies=[Depends(verify_cron_secret)])
async def complete_stakes(request: Request):
    completed = await request.app.state.stake_service.complete_matured_stakes()
    return {"completed": completed}


@router.post("/withdrawals", dependencies=[Depends(verify_cron_secret)])
async def process_withdrawals(request: Request):
    return await request.app.state.withdrawal_service.process_pending_withdrawals()


@router.post("/run-all", dependencies=[Depends(verify_cron_secret)])
async def run_all(request: Request):
    """Run every sweep once, in lifecycle order"""
    state = request.app.state
    results = {
        "activated": await state.raffle_service.activate_due_raffles(),
        "ending": await state.raffle_service.mark_ending_raffles(),
        "closed": await state.raffle_service.close_expired_raffles(),
        "draws": await state.raffle_service.poll_pending_draws(),
        "refunds": await state.raffle_service.process_pending_refunds(),
        "payouts": await state.payout_service.resolve_processing(),
        "stakes_verified": await state.stake_service.verify_pending_stakes(),
        "stakes_completed": await state.stake_service.complete_matured_stakes(),
        "withdrawals": await state.withdrawal_service.process_pending_withdrawals(),
    }
    logger.info(f"Cron sweep finished: {results}")
    return results
