import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

import pytz

from config import Settings
from database import Database
from services.errors import TransientExternalError

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Naive UTC timestamp, matching what Mongo hands back"""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(pytz.UTC).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


def normalize_address(address: str) -> str:
    return (address or "").strip().lower()


class BaseService:
    """Shared wiring for the services: store, settings and clock"""

    def __init__(self, db: Database, settings: Settings, clock: Callable[[], datetime] = None):
        self.db = db
        self.settings = settings
        self.clock = clock or utc_now

    def now(self) -> datetime:
        return as_naive_utc(self.clock())

    def transfer_stale_before(self) -> datetime:
        """Claims older than this with no transfer on the ledger are treated as never sent"""
        return self.now() - timedelta(minutes=self.settings.transfer_resolution_minutes)

    async def call_external(self, func: Callable[[], Awaitable[Any]], description: str, retry: bool = True) -> Any:
        """Call an adapter, retrying transient failures with exponential backoff.

        Transfers are submitted with ``retry=False``; after a transient
        failure their outcome is unknown until looked up on the ledger.
        """
        attempts = max(1, self.settings.max_external_retries) if retry else 1
        for attempt in range(attempts):
            try:
                return await func()
            except TransientExternalError as e:
                if attempt == attempts - 1:
                    logger.error(f"{description} failed after {attempts} attempts: {e}")
                    raise
                logger.warning(f"Retry attempt {attempt + 1} for {description}: {e}")
                await asyncio.sleep(0.1 * (2 ** attempt))
