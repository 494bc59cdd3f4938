import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_rates(name: str, default: str) -> List[float]:
    raw = os.getenv(name, default)
    return [float(part) for part in raw.split(",") if part.strip()]


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at startup and passed to every service"""

    mongodb_url: str = "mongodb://localhost:27017"
    database_name: str = "raffle_platform"
    secret_key: str = "change-me"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30 * 24 * 60
    log_level: str = "INFO"

    # External collaborators
    ledger_api_url: str = "http://localhost:8545"
    ledger_api_key: str = ""
    randomness_api_url: str = ""
    randomness_callback_secret: str = ""
    cron_secret: str = ""
    treasury_address: str = ""
    payout_asset: str = "USDC"
    external_timeout_seconds: float = 30.0
    max_external_retries: int = 3

    # Raffle rules
    protocol_fee_percent: float = 10.0
    max_protocol_fee_percent: float = 10.0
    min_raffle_hours: int = 1
    max_raffle_days: int = 90
    min_entry_price: int = 1
    max_entry_price: int = 100_000_000_000
    max_winner_count: int = 100
    max_tickets_per_entry: int = 10_000
    payment_tolerance_bps: int = 10
    ending_threshold_minutes: int = 60
    randomness_timeout_minutes: int = 60
    transfer_resolution_minutes: int = 30
    emergency_cancel_hours: int = 12
    max_cas_retries: int = 5
    allow_repeat_wins: bool = False

    # Pagination
    default_page_limit: int = 20
    max_page_limit: int = 100

    # Staking / referral / withdrawal
    stake_min: float = 50.0
    stake_max: float = 10_000.0
    stake_monthly_rate: float = 0.08
    stake_duration_months: int = 24
    referral_rates: List[float] = field(default_factory=lambda: [0.08, 0.03, 0.02, 0.01, 0.01])
    withdrawal_day: int = 1
    min_withdrawal: float = 10.0
    max_withdrawal: float = 100_000.0

    @property
    def max_referral_levels(self) -> int:
        return len(self.referral_rates)

    @staticmethod
    def from_env(env_file: Optional[str] = None) -> "Settings":
        load_dotenv(env_file)

        return Settings(
            mongodb_url=os.getenv("MONGODB_URL", "mongodb://localhost:27017"),
            database_name=os.getenv("DATABASE_NAME", "raffle_platform"),
            secret_key=os.getenv("SECRET_KEY", "change-me"),
            algorithm=os.getenv("ALGORITHM", "HS256"),
            access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 30 * 24 * 60)),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            ledger_api_url=os.getenv("LEDGER_API_URL", "http://localhost:8545").strip(),
            ledger_api_key=os.getenv("LEDGER_API_KEY", "").strip(),
            randomness_api_url=os.getenv("RANDOMNESS_API_URL", "").strip(),
            randomness_callback_secret=os.getenv("RANDOMNESS_CALLBACK_SECRET", ""),
            cron_secret=os.getenv("CRON_SECRET", ""),
            treasury_address=os.getenv("TREASURY_ADDRESS", "").strip().lower(),
            payout_asset=os.getenv("PAYOUT_ASSET", "USDC"),
            external_timeout_seconds=float(os.getenv("EXTERNAL_TIMEOUT_SECONDS", 30)),
            max_external_retries=int(os.getenv("MAX_EXTERNAL_RETRIES", 3)),
            protocol_fee_percent=float(os.getenv("PROTOCOL_FEE_PERCENT", 10)),
            min_raffle_hours=int(os.getenv("MIN_RAFFLE_HOURS", 1)),
            max_raffle_days=int(os.getenv("MAX_RAFFLE_DAYS", 90)),
            min_entry_price=int(os.getenv("MIN_ENTRY_PRICE", 1)),
            max_entry_price=int(os.getenv("MAX_ENTRY_PRICE", 100_000_000_000)),
            max_winner_count=int(os.getenv("MAX_WINNER_COUNT", 100)),
            max_tickets_per_entry=int(os.getenv("MAX_TICKETS_PER_ENTRY", 10_000)),
            payment_tolerance_bps=int(os.getenv("PAYMENT_TOLERANCE_BPS", 10)),
            ending_threshold_minutes=int(os.getenv("ENDING_THRESHOLD_MINUTES", 60)),
            randomness_timeout_minutes=int(os.getenv("RANDOMNESS_TIMEOUT_MINUTES", 60)),
            transfer_resolution_minutes=int(os.getenv("TRANSFER_RESOLUTION_MINUTES", 30)),
            emergency_cancel_hours=int(os.getenv("EMERGENCY_CANCEL_HOURS", 12)),
            max_cas_retries=int(os.getenv("MAX_CAS_RETRIES", 5)),
            allow_repeat_wins=_env_bool("ALLOW_REPEAT_WINS", False),
            default_page_limit=int(os.getenv("DEFAULT_PAGE_LIMIT", 20)),
            max_page_limit=int(os.getenv("MAX_PAGE_LIMIT", 100)),
            stake_min=float(os.getenv("STAKE_MIN", 50)),
            stake_max=float(os.getenv("STAKE_MAX", 10_000)),
            stake_monthly_rate=float(os.getenv("STAKE_MONTHLY_RATE", 0.08)),
            stake_duration_months=int(os.getenv("STAKE_DURATION_MONTHS", 24)),
            referral_rates=_env_rates("REFERRAL_RATES", "0.08,0.03,0.02,0.01,0.01"),
            withdrawal_day=int(os.getenv("WITHDRAWAL_DAY", 1)),
            min_withdrawal=float(os.getenv("MIN_WITHDRAWAL", 10)),
            max_withdrawal=float(os.getenv("MAX_WITHDRAWAL", 100_000)),
        )
