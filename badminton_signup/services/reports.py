"""Weekly income/expense report over closed-session archives."""

import math
from datetime import date, timedelta

from pydantic import BaseModel

from badminton_signup.core.config import Settings
from badminton_signup.models.archive import SessionArchive
from badminton_signup.storage.base import DocumentStore


class PriceCalculation(BaseModel):
    base_price: int
    running_balance: int
    weeks_to_distribute: int
    players_per_week: int
    price_adjustment: int
    recommended_price: int


class WeeklyReport(BaseModel):
    week_start: date
    week_end: date  # exclusive
    session_count: int
    total_players: int
    income: int
    court_cost: int
    equipment_cost: int
    expense: int
    gross_profit: int
    running_balance: int
    price: PriceCalculation
    archive_ids: list[str]


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def recommended_price(base_price: int, running_balance: int, weeks: int, players_per_week: int) -> PriceCalculation:
    """
    Spread the accumulated balance over the next `weeks` weeks of players.

    A surplus lowers the price, a deficit raises it.
    """
    weeks = max(weeks, 1)
    adjustment = _round_half_up(running_balance / weeks / max(players_per_week, 1))
    return PriceCalculation(
        base_price=base_price,
        running_balance=running_balance,
        weeks_to_distribute=weeks,
        players_per_week=players_per_week,
        price_adjustment=adjustment,
        recommended_price=base_price - adjustment,
    )


async def weekly_report(store: DocumentStore, settings: Settings, week_start: date) -> WeeklyReport:
    week_end = week_start + timedelta(days=7)
    archives = [SessionArchive.model_validate(d) for d in await store.find(SessionArchive.collection)]
    in_week = sorted(
        (a for a in archives if week_start <= a.session_date < week_end),
        key=lambda a: (a.session_date, a.closed_at),
    )
    running_balance = sum(a.profit for a in archives if a.session_date < week_end)
    players = sum(a.active_count for a in in_week)
    income = sum(a.income for a in in_week)
    court_cost = sum(a.court_cost for a in in_week)
    equipment_cost = sum(a.equipment_cost for a in in_week)
    return WeeklyReport(
        week_start=week_start,
        week_end=week_end,
        session_count=len(in_week),
        total_players=players,
        income=income,
        court_cost=court_cost,
        equipment_cost=equipment_cost,
        expense=court_cost + equipment_cost,
        gross_profit=income - court_cost - equipment_cost,
        running_balance=running_balance,
        price=recommended_price(
            settings.report_base_price, running_balance, settings.report_weeks_to_distribute, players
        ),
        archive_ids=[a.id for a in in_week],
    )
