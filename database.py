import logging

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import IndexModel

from config import Settings

logger = logging.getLogger(__name__)


class Database:
    """Motor client plus the collections the services work against"""

    def __init__(self, settings: Settings = None, client=None):
        settings = settings or Settings()
        self.client = client or AsyncIOMotorClient(settings.mongodb_url)
        self.database = self.client[settings.database_name]

        # Collections
        self.raffles = self.database.raffles
        self.entries = self.database.entries
        self.winners = self.database.winners
        self.users = self.database.users
        self.stakes = self.database.stakes
        self.withdrawals = self.database.withdrawals
        self.referrals = self.database.referrals
        self.ledger_refs = self.database.ledger_refs
        self.withdrawal_periods = self.database.withdrawal_periods

    async def init_db(self):
        """Create secondary indexes (foreign key + creation time)"""

        await self.raffles.create_indexes([
            IndexModel("status"),
            IndexModel("type"),
            IndexModel("end_time"),
            IndexModel("draw.request_id"),
            IndexModel([("status", 1), ("end_time", 1)]),
            IndexModel([("created_at", -1), ("_id", -1)]),
        ])

        await self.entries.create_indexes([
            IndexModel("tx_ref"),
            IndexModel([("raffle_id", 1), ("created_at", 1)]),
            IndexModel([("participant", 1), ("created_at", -1)]),
            IndexModel([("raffle_id", 1), ("status", 1)]),
        ])

        await self.winners.create_indexes([
            IndexModel([("raffle_id", 1), ("position", 1)]),
            IndexModel([("participant", 1), ("created_at", -1)]),
            IndexModel("status"),
        ])

        await self.users.create_indexes([
            IndexModel("referred_by"),
            IndexModel("referral_code", unique=True),
        ])

        await self.stakes.create_indexes([
            IndexModel([("owner", 1), ("created_at", -1)]),
            IndexModel("status"),
        ])

        await self.withdrawals.create_indexes([
            IndexModel([("owner", 1), ("requested_at", -1)]),
            IndexModel("status"),
        ])

        await self.referrals.create_indexes([
            IndexModel([("referrer", 1), ("created_at", -1)]),
            IndexModel("referred_user"),
        ])

        logger.info("Database initialized successfully")

    def close(self):
        self.client.close()
