from datetime import datetime, timedelta

from services.accrual import add_months, max_reward, months_elapsed, stake_reward


def stake(amount=1000.0, status="active", start=datetime(2024, 1, 1)):
    return {
        "amount": amount,
        "status": status,
        "start_date": start,
        "config": {"duration_months": 24, "monthly_rate": 0.08},
    }


def test_add_months_clamps_day():
    assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
    assert add_months(datetime(2023, 1, 31), 1) == datetime(2023, 2, 28)
    assert add_months(datetime(2024, 11, 15, 8, 30), 3) == datetime(2025, 2, 15, 8, 30)


def test_months_elapsed_counts_whole_months():
    start = datetime(2024, 1, 15, 12)
    assert months_elapsed(start, datetime(2024, 2, 15, 11)) == 0
    assert months_elapsed(start, datetime(2024, 2, 15, 12)) == 1
    assert months_elapsed(start, datetime(2025, 1, 14)) == 11
    assert months_elapsed(start, datetime(2023, 12, 1)) == 0


def test_reward_after_95_days():
    s = stake()
    assert stake_reward(s, s["start_date"] + timedelta(days=95)) == 240.0


def test_reward_capped_at_duration():
    s = stake()
    assert stake_reward(s, s["start_date"] + timedelta(days=800)) == 1920.0
    assert max_reward(s) == 1920.0


def test_reward_is_monotonic():
    s = stake()
    previous = 0.0
    for day in range(0, 900, 7):
        reward = stake_reward(s, s["start_date"] + timedelta(days=day))
        assert reward >= previous
        previous = reward


def test_unconfirmed_stakes_accrue_nothing():
    assert stake_reward(stake(status="pending", start=None), datetime(2030, 1, 1)) == 0.0
    assert stake_reward(stake(status="verifying", start=None), datetime(2030, 1, 1)) == 0.0
