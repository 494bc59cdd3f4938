"""Pure reward arithmetic for stakes"""
import calendar
from datetime import datetime

from models.stake import StakeStatus

ACCRUING = (StakeStatus.ACTIVE.value, StakeStatus.COMPLETED.value)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def months_elapsed(start: datetime, now: datetime) -> int:
    """Whole calendar months between start and now (0 when now precedes start)"""
    if now <= start:
        return 0
    months = (now.year - start.year) * 12 + (now.month - start.month)
    while months > 0 and add_months(start, months) > now:
        months -= 1
    return months


def stake_reward(stake: dict, now: datetime) -> float:
    if stake.get("status") not in ACCRUING or not stake.get("start_date"):
        return 0.0

    config = stake["config"]
    months = min(months_elapsed(stake["start_date"], now), config["duration_months"])
    return round(stake["amount"] * config["monthly_rate"] * months, 6)


def max_reward(stake: dict) -> float:
    config = stake["config"]
    return round(stake["amount"] * config["monthly_rate"] * config["duration_months"], 6)
