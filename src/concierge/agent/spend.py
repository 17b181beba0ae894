"""USD spend accounting: the persisted per-day ledger and per-turn totals."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, timedelta

import structlog
from pydantic import BaseModel, Field

from concierge.models.config import SpendConfig
from concierge.store.records import RecordStore

SPEND_LEDGER_KEY = "spend_ledger"

_logger = structlog.get_logger("concierge.agent.spend")


def format_usd(value: float) -> str:
    """
    Render a USD amount with up to six decimals and at least two.

    ``0.2 -> "0.20"``, ``0.21 -> "0.21"``, ``0.0012345 -> "0.001235"``.
    """
    text = f"{value:.6f}".rstrip("0")
    whole, _, fraction = text.partition(".")
    return f"{whole}.{fraction.ljust(2, '0')}"


def spend_limit_message(
    today_usd: float,
    month_usd: float,
    daily_limit_usd: float | None,
    monthly_limit_usd: float | None,
) -> str | None:
    """User-facing apology when the daily and/or monthly limit is reached, else ``None``."""
    daily_exceeded = daily_limit_usd is not None and today_usd >= daily_limit_usd
    monthly_exceeded = monthly_limit_usd is not None and month_usd >= monthly_limit_usd

    if daily_exceeded and monthly_exceeded:
        return (
            "I paused tool usage because both spend limits were reached "
            f"(today: ${format_usd(today_usd)} / ${format_usd(daily_limit_usd)}; "
            f"this month: ${format_usd(month_usd)} / ${format_usd(monthly_limit_usd)}). "
            "You can raise the limits in the spend settings."
        )
    if daily_exceeded:
        return (
            "I paused tool usage because the daily spend limit was reached "
            f"(today: ${format_usd(today_usd)} / ${format_usd(daily_limit_usd)}). "
            "You can raise it in the spend settings."
        )
    if monthly_exceeded:
        return (
            "I paused tool usage because the monthly spend limit was reached "
            f"(this month: ${format_usd(month_usd)} / ${format_usd(monthly_limit_usd)}). "
            "You can raise it in the spend settings."
        )
    return None


@dataclass(frozen=True)
class SpendSnapshot:
    today_usd: float
    month_usd: float


class _LedgerRecord(BaseModel):
    by_day: dict[str, float] = Field(default_factory=dict)
    """ISO date (``YYYY-MM-DD``) to USD spent that day."""


class SpendLedger:
    """
    Persisted per-day USD totals.

    Day keys are local ISO dates; the month total is the sum of the days
    sharing the ``YYYY-MM`` prefix. Entries older than the retention window
    are pruned on every write.
    """

    def __init__(
        self,
        records: RecordStore,
        config: SpendConfig | None = None,
        *,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._records = records
        self._config = config or SpendConfig()
        self._today = today
        self._record: _LedgerRecord | None = None

    async def _load(self) -> _LedgerRecord:
        if self._record is None:
            self._record = await self._records.load_model(
                SPEND_LEDGER_KEY, _LedgerRecord, _LedgerRecord()
            )
        return self._record

    async def record(self, amount_usd: float | None) -> None:
        """Add ``amount_usd`` to today's total. ``None`` and non-positive amounts are ignored."""
        if amount_usd is None or amount_usd <= 0:
            return
        ledger = await self._load()
        day = self._today()
        key = day.isoformat()
        ledger.by_day[key] = ledger.by_day.get(key, 0.0) + amount_usd

        cutoff = (day - timedelta(days=self._config.ledger_retention_days)).isoformat()
        stale = [k for k in ledger.by_day if k < cutoff]
        for k in stale:
            del ledger.by_day[k]

        await self._records.save_model(SPEND_LEDGER_KEY, ledger)
        _logger.debug("spend_recorded", amount_usd=amount_usd, day=key, pruned=len(stale))

    async def snapshot(self) -> SpendSnapshot:
        ledger = await self._load()
        day = self._today()
        month_prefix = day.strftime("%Y-%m")
        return SpendSnapshot(
            today_usd=ledger.by_day.get(day.isoformat(), 0.0),
            month_usd=sum(v for k, v in ledger.by_day.items() if k.startswith(month_prefix)),
        )


class TurnSpend:
    """
    Running spend for one turn.

    ``cumulative_usd`` only counts this turn; ``today_usd`` and ``month_usd``
    start from the ledger snapshot and grow with each billed round.
    """

    def __init__(self, snapshot: SpendSnapshot, config: SpendConfig) -> None:
        self.cumulative_usd = 0.0
        self.today_usd = snapshot.today_usd
        self.month_usd = snapshot.month_usd
        self._config = config

    def add(self, amount_usd: float | None) -> float:
        if amount_usd is None or amount_usd <= 0:
            return 0.0
        self.cumulative_usd += amount_usd
        self.today_usd += amount_usd
        self.month_usd += amount_usd
        return amount_usd

    @property
    def turn_limit_reached(self) -> bool:
        return self.cumulative_usd >= self._config.per_turn_limit_usd

    def budget_exceeded_message(self) -> str | None:
        return spend_limit_message(
            self.today_usd,
            self.month_usd,
            self._config.daily_limit_usd,
            self._config.monthly_limit_usd,
        )

    def exceeded_scope(self) -> str:
        daily = self._config.daily_limit_usd
        if daily is not None and self.today_usd >= daily:
            return "daily"
        return "monthly"
