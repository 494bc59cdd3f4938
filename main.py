from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import uvicorn
from datetime import datetime
import logging

from config import Settings
from database import Database
from routes import admin, auth, cron, raffles, referrals, stakes, users, withdrawals
from services.errors import ServiceError
from services.ledger_service import HttpLedgerAdapter
from services.payout_service import PayoutService
from services.query_service import QueryService
from services.raffle_service import RaffleService
from services.randomness_service import HttpRandomnessAdapter, LocalRandomnessAdapter
from services.referral_service import ReferralService
from services.stake_service import StakeService
from services.withdrawal_service import WithdrawalService

logger = logging.getLogger(__name__)


def build_services(app: FastAPI, settings: Settings, db: Database, ledger, randomness, clock=None):
    """Wire every service onto ``app.state``"""
    app.state.settings = settings
    app.state.db = db
    app.state.referral_service = ReferralService(db, settings, clock)
    app.state.raffle_service = RaffleService(db, settings, ledger, randomness, clock)
    app.state.payout_service = PayoutService(db, settings, ledger, clock)
    app.state.query_service = QueryService(db, settings, clock)
    app.state.stake_service = StakeService(db, settings, ledger, app.state.referral_service, clock)
    app.state.withdrawal_service = WithdrawalService(
        db, settings, ledger, app.state.stake_service, app.state.referral_service, clock
    )


def create_app(settings: Settings = None, db: Database = None, ledger=None, randomness=None, clock=None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        app_settings = settings or Settings.from_env()
        logging.basicConfig(level=app_settings.log_level)

        database = db or Database(app_settings)
        await database.init_db()

        ledger_adapter = ledger or HttpLedgerAdapter(
            app_settings.ledger_api_url, app_settings.ledger_api_key, app_settings.external_timeout_seconds
        )
        if randomness is not None:
            randomness_adapter = randomness
        elif app_settings.randomness_api_url:
            randomness_adapter = HttpRandomnessAdapter(
                app_settings.randomness_api_url, timeout_s=app_settings.external_timeout_seconds
            )
        else:
            logger.warning("RANDOMNESS_API_URL not set, using local entropy for draws")
            randomness_adapter = LocalRandomnessAdapter()

        build_services(app, app_settings, database, ledger_adapter, randomness_adapter, clock)
        logger.info("Raffle platform API started")

        yield

        # Shutdown
        if db is None:
            database.close()

    app = FastAPI(
        title="Raffle Platform API",
        description="Raffle lifecycle, payout settlement and stake rewards",
        version="1.0.0",
        lifespan=lifespan
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Include routers
    app.include_router(auth.router, prefix="/api/v1/auth", tags=["Authentication"])
    app.include_router(raffles.router, prefix="/api/v1/raffles", tags=["Raffles"])
    app.include_router(users.router, prefix="/api/v1/users", tags=["Users"])
    app.include_router(admin.router, prefix="/api/v1/admin", tags=["Admin"])
    app.include_router(stakes.router, prefix="/api/v1/stakes", tags=["Stakes"])
    app.include_router(withdrawals.router, prefix="/api/v1/withdrawals", tags=["Withdrawals"])
    app.include_router(referrals.router, prefix="/api/v1/referrals", tags=["Referrals"])
    app.include_router(cron.router, prefix="/api/v1/cron", tags=["Cron"])

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "timestamp": datetime.utcnow()}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
