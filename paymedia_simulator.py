# /// script
# dependencies = [
#   "streamlit>=1.28.0",
#   "plotly>=5.0.0",
#   "numpy>=1.26.0",
# ]
# requires-python = ">=3.10"
# ///

"""
Pay Media Recharge Planner
=========================================
Day-by-day balance projection for a prepaid pay media account. Consumption is
taken from a daily budget on scheduled working days, and recharges are
requested early enough that the bank settlement lag never lets the balance
drop below the configured floor.

Run the interactive page with ``streamlit run paymedia_simulator.py`` or the
command line version with ``python paymedia_simulator.py --cli``.
"""

import argparse
import json
import logging
import os
import re
import sys
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from functools import cached_property
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import numpy as np
import plotly.graph_objects as go

logger = logging.getLogger(__name__)

# Bank holidays shipped with the calculator (2025 calendar)
DEFAULT_HOLIDAYS: Tuple[date, ...] = tuple(
    date.fromisoformat(d)
    for d in (
        "2025-01-01",
        "2025-03-03",
        "2025-03-04",
        "2025-03-24",
        "2025-04-02",
        "2025-04-18",
        "2025-05-01",
        "2025-05-25",
        "2025-06-16",
        "2025-06-20",
        "2025-07-09",
        "2025-08-17",
        "2025-10-12",
        "2025-11-24",
        "2025-12-08",
        "2025-12-25",
        "2025-05-02",
        "2025-08-15",
        "2025-11-21",
    )
)

WEEKDAY_NAMES_ES = ("lun", "mar", "mié", "jue", "vie", "sáb", "dom")

AUTO_RECHARGE_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "paymedia-simulator/auto-recharge")

STATE_FILE_ENV = "PAYMEDIA_STATE_FILE"

# =============================================================================
# ERRORS
# =============================================================================


class InvalidInputError(ValueError):
    """Rejected input value; the calculator keeps its previous state"""


class NonBusinessDayWarning(Exception):
    """A recharge credit date falls on a day the bank is closed.

    Recoverable: the caller asks the user and re-submits with
    ``allow_non_business_day=True``.
    """

    def __init__(self, credit_date: date):
        self.credit_date = credit_date
        super().__init__(
            f"Credit date {credit_date.isoformat()} is not a bank business day"
        )


# =============================================================================
# CORE DOMAIN MODELS
# =============================================================================


@dataclass(frozen=True)
class SpecialConsumption:
    """Manual consumption amount for a single day"""

    day: date
    amount: float

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError(
                f"Special consumption must be non-negative, got {self.amount}"
            )


@dataclass(frozen=True)
class SpecialRecharge:
    """User-entered recharge; takes precedence over automatic ones"""

    request_date: date
    credit_date: date
    amount: float
    identifier: str

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError(f"Recharge amount must be non-negative, got {self.amount}")
        if not self.identifier:
            raise ValueError("Recharge identifier must not be empty")


@dataclass(frozen=True)
class RechargeRecord:
    """Recharge attached to the row of its request date"""

    amount: float
    request_date: date
    credit_date: date
    identifier: str
    automatic: bool = False

    @classmethod
    def from_special(cls, special: SpecialRecharge) -> "RechargeRecord":
        return cls(
            amount=special.amount,
            request_date=special.request_date,
            credit_date=special.credit_date,
            identifier=special.identifier,
        )


@dataclass(frozen=True)
class CalculatorParameters:
    """Scalar parameters of one recomputation pass"""

    start_date: date = field(default_factory=date.today)
    daily_budget: float = 150000.0
    initial_balance: float = 500000.0
    recharge_amount: float = 500000.0
    settlement_lag: int = 3  # bank business days
    minimum_balance: float = 150000.0
    rows: int = 60
    scheduled_weekdays: Tuple[int, ...] = (0, 1, 2, 3, 4)  # 0=Monday, 6=Sunday
    automatic_recharges: bool = True

    def __post_init__(self):
        """Validate parameter bounds"""
        if not isinstance(self.start_date, date):
            raise ValueError(f"Start date must be a date, got {self.start_date!r}")
        if self.daily_budget < 0:
            raise ValueError(f"Daily budget must be non-negative, got {self.daily_budget}")
        if self.recharge_amount < 0:
            raise ValueError(
                f"Recharge amount must be non-negative, got {self.recharge_amount}"
            )
        if self.minimum_balance < 0:
            raise ValueError(
                f"Minimum balance must be non-negative, got {self.minimum_balance}"
            )
        if isinstance(self.settlement_lag, bool) or not isinstance(self.settlement_lag, int):
            raise ValueError(
                f"Settlement lag must be a whole number of days, got {self.settlement_lag!r}"
            )
        if self.settlement_lag < 0:
            raise ValueError(
                f"Settlement lag must be non-negative, got {self.settlement_lag}"
            )
        if isinstance(self.rows, bool) or not isinstance(self.rows, int) or self.rows < 1:
            raise ValueError(f"Row count must be a positive integer, got {self.rows!r}")
        for weekday in self.scheduled_weekdays:
            if not (0 <= weekday <= 6):
                raise ValueError(
                    f"Scheduled weekdays must be 0-6 (Monday-Sunday), got {weekday}"
                )


@dataclass(frozen=True)
class Overrides:
    """Manual exceptions entered by the user"""

    holidays: Tuple[date, ...] = DEFAULT_HOLIDAYS
    non_working_days: Tuple[date, ...] = ()
    working_days: Tuple[date, ...] = ()
    special_consumptions: Tuple[SpecialConsumption, ...] = ()
    special_recharges: Tuple[SpecialRecharge, ...] = ()

    @cached_property
    def consumption_by_date(self) -> Dict[date, float]:
        return {c.day: c.amount for c in self.special_consumptions}

    @cached_property
    def recharges_by_request_date(self) -> Dict[date, SpecialRecharge]:
        # First entry wins when two share a request date
        lookup: Dict[date, SpecialRecharge] = {}
        for special in self.special_recharges:
            lookup.setdefault(special.request_date, special)
        return lookup

    def find_recharge(self, identifier: str) -> Optional[SpecialRecharge]:
        for special in self.special_recharges:
            if special.identifier == identifier:
                return special
        return None


@dataclass(frozen=True)
class CalculatorState:
    """Parameters plus override tables: the snapshot that gets persisted"""

    parameters: CalculatorParameters = field(default_factory=CalculatorParameters)
    overrides: Overrides = field(default_factory=Overrides)


@dataclass
class DayRow:
    """One simulated day"""

    day: date
    is_working_day: bool
    is_business_day: bool
    opening_balance: float
    consumption: float
    special_consumption: bool
    recharge: Optional[RechargeRecord]
    credited: float  # recharge amounts credited on this date
    closing_balance: float
    projection_date: date
    projected_balance: float


# =============================================================================
# CALENDAR RULES
# =============================================================================


@dataclass(frozen=True)
class CalendarRules:
    """Working-day and bank business-day predicates"""

    scheduled_weekdays: FrozenSet[int]
    holidays: FrozenSet[date] = frozenset()
    non_working_days: FrozenSet[date] = frozenset()
    working_days: FrozenSet[date] = frozenset()

    @classmethod
    def from_state(cls, state: CalculatorState) -> "CalendarRules":
        return cls(
            scheduled_weekdays=frozenset(state.parameters.scheduled_weekdays),
            holidays=frozenset(state.overrides.holidays),
            non_working_days=frozenset(state.overrides.non_working_days),
            working_days=frozenset(state.overrides.working_days),
        )

    def is_working_day(self, day: date) -> bool:
        """Scheduled spending day; a manual working override wins over everything"""
        if day in self.working_days:
            return True
        return day.weekday() in self.scheduled_weekdays and day not in self.non_working_days

    def is_business_day(self, day: date) -> bool:
        """Bank open: Monday-Friday and not a holiday"""
        return day.weekday() < 5 and day not in self.holidays


# =============================================================================
# STATELESS PLANNING ENGINE
# =============================================================================


def automatic_recharge_id(request_date: date, taken: FrozenSet[str] = frozenset()) -> str:
    """
    Stable identifier so identical inputs produce identical rows.

    A pinned recharge keeps the identifier it had as an automatic one, so
    identifiers in ``taken`` are skipped by salting the name with a counter.
    """
    name = request_date.isoformat()
    salt = 0
    while True:
        identifier = str(uuid.uuid5(AUTO_RECHARGE_NAMESPACE, name))
        if identifier not in taken:
            return identifier
        salt += 1
        name = f"{request_date.isoformat()}#{salt}"


class PayMediaEngine:
    """Stateless recharge planning engine - pure functions of a CalculatorState"""

    @staticmethod
    def projected_settlement_date(
        request_date: date, lag: int, calendar: CalendarRules
    ) -> date:
        """
        Date on which a recharge requested on ``request_date`` is credited.

        Counts bank business days strictly after the request date and returns
        the ``lag``-th one. Non-business days are skipped without consuming
        the count. A lag of 0 settles on the request date itself.
        """
        if lag < 0:
            raise ValueError(f"Settlement lag must be non-negative, got {lag}")

        settlement = request_date
        counted = 0
        while counted < lag:
            settlement += timedelta(days=1)
            if calendar.is_business_day(settlement):
                counted += 1
        return settlement

    @staticmethod
    def consumption_for(
        day: date,
        opening_balance: float,
        state: CalculatorState,
        calendar: CalendarRules,
    ) -> Tuple[float, bool]:
        """
        Consumption for a day given its opening balance.
        Returns: (amount, is_special_override)
        """
        special = state.overrides.consumption_by_date.get(day)
        if special is not None:
            return special, True
        if calendar.is_working_day(day):
            # Never spend more than what is left, and never a negative amount
            return max(0.0, min(state.parameters.daily_budget, opening_balance)), False
        return 0.0, False

    @staticmethod
    def row_index(rows: List[DayRow], day: date) -> Optional[int]:
        """Index of the row dated ``day`` (rows are contiguous calendar days)"""
        if not rows:
            return None
        offset = (day - rows[0].day).days
        if 0 <= offset < len(rows):
            return offset
        return None

    @staticmethod
    def scheduled_credits(rows: List[DayRow], state: CalculatorState) -> Dict[date, float]:
        """
        Total recharge amount crediting on each date.

        Covers every recharge attached to a row plus the special recharges not
        attached anywhere (their request date lies outside the horizon).
        """
        credits: Dict[date, float] = {}
        attached = set()
        for row in rows:
            if row.recharge is None:
                continue
            attached.add(row.recharge.identifier)
            credit_date = row.recharge.credit_date
            credits[credit_date] = credits.get(credit_date, 0.0) + row.recharge.amount

        for special in state.overrides.special_recharges:
            if special.identifier in attached:
                continue
            credits[special.credit_date] = (
                credits.get(special.credit_date, 0.0) + special.amount
            )
        return credits

    @staticmethod
    def projected_balance(
        rows: List[DayRow],
        day: date,
        state: CalculatorState,
        calendar: CalendarRules,
        credits: Optional[Dict[date, float]] = None,
    ) -> float:
        """
        Balance expected on the date a recharge requested on ``day`` would settle.

        Closing balance of the settlement row, plus any credit on ``day`` not yet
        reflected in the ledger. Falls back to the initial balance when the
        settlement date is past the end of the horizon.
        """
        settlement = PayMediaEngine.projected_settlement_date(
            day, state.parameters.settlement_lag, calendar
        )
        settlement_index = PayMediaEngine.row_index(rows, settlement)
        if settlement_index is None:
            logger.debug(
                "No row for settlement date %s, using initial balance", settlement
            )
            return state.parameters.initial_balance

        if credits is None:
            credits = PayMediaEngine.scheduled_credits(rows, state)
        day_index = PayMediaEngine.row_index(rows, day)
        reflected = rows[day_index].credited if day_index is not None else 0.0
        pending = max(credits.get(day, 0.0) - reflected, 0.0)

        return rows[settlement_index].closing_balance + pending

    @staticmethod
    def build_initial_rows(state: CalculatorState) -> List[DayRow]:
        """Initial ledger from the parameters, before any automatic recharge"""
        params = state.parameters
        calendar = CalendarRules.from_state(state)

        credits: Dict[date, float] = {}
        for special in state.overrides.special_recharges:
            credits[special.credit_date] = (
                credits.get(special.credit_date, 0.0) + special.amount
            )

        rows: List[DayRow] = []
        balance = params.initial_balance
        for offset in range(params.rows):
            day = params.start_date + timedelta(days=offset)
            consumption, is_special = PayMediaEngine.consumption_for(
                day, balance, state, calendar
            )
            special = state.overrides.recharges_by_request_date.get(day)
            credited = credits.get(day, 0.0)

            row = DayRow(
                day=day,
                is_working_day=calendar.is_working_day(day),
                is_business_day=calendar.is_business_day(day),
                opening_balance=balance,
                consumption=consumption,
                special_consumption=is_special,
                recharge=RechargeRecord.from_special(special) if special else None,
                credited=credited,
                closing_balance=balance - consumption + credited,
                projection_date=PayMediaEngine.projected_settlement_date(
                    day, params.settlement_lag, calendar
                ),
                projected_balance=0.0,
            )
            rows.append(row)
            balance = row.closing_balance

        return rows

    @staticmethod
    def propagate_balances(
        rows: List[DayRow], start: int, state: CalculatorState, calendar: CalendarRules
    ) -> None:
        """Recompute opening, consumption, credits and closing from ``start`` on"""
        credits = PayMediaEngine.scheduled_credits(rows, state)
        for j in range(start, len(rows)):
            row = rows[j]
            row.opening_balance = (
                state.parameters.initial_balance if j == 0 else rows[j - 1].closing_balance
            )
            row.consumption, row.special_consumption = PayMediaEngine.consumption_for(
                row.day, row.opening_balance, state, calendar
            )
            row.credited = credits.get(row.day, 0.0)
            row.closing_balance = row.opening_balance - row.consumption + row.credited

    @staticmethod
    def project_from(
        rows: List[DayRow], start: int, state: CalculatorState, calendar: CalendarRules
    ) -> None:
        """Recompute projection date and projected balance from ``start`` on"""
        lag = state.parameters.settlement_lag
        credits = PayMediaEngine.scheduled_credits(rows, state)
        for row in rows[start:]:
            row.projection_date = PayMediaEngine.projected_settlement_date(
                row.day, lag, calendar
            )
            row.projected_balance = PayMediaEngine.projected_balance(
                rows, row.day, state, calendar, credits
            )

    @staticmethod
    def schedule_recharges(rows: List[DayRow], state: CalculatorState) -> List[DayRow]:
        """
        Insert the recharges needed to keep the projected balance above the floor.

        Single forward pass over the rows, mutating them in place. Every time a
        recharge is attached, the balances and projections of the whole suffix
        are recomputed, so later decisions always see the updated ledger.
        """
        params = state.parameters
        if not params.automatic_recharges:
            return rows

        calendar = CalendarRules.from_state(state)
        taken = frozenset(s.identifier for s in state.overrides.special_recharges)

        for i, row in enumerate(rows):
            # Recharges can only be requested while the bank is open
            if not row.is_business_day:
                continue
            # Manual/special recharges are never replaced
            if row.recharge is not None:
                continue

            # Upstream recharges may have changed the opening balance
            row.consumption, row.special_consumption = PayMediaEngine.consumption_for(
                row.day, row.opening_balance, state, calendar
            )

            special = state.overrides.recharges_by_request_date.get(row.day)
            if special is not None:
                recharge = RechargeRecord.from_special(special)
                logger.debug("Adopting special recharge %s on %s", special.identifier, row.day)
            else:
                projected = PayMediaEngine.projected_balance(rows, row.day, state, calendar)
                if projected >= params.minimum_balance:
                    continue
                recharge = RechargeRecord(
                    amount=params.recharge_amount,
                    request_date=row.day,
                    credit_date=PayMediaEngine.projected_settlement_date(
                        row.day, params.settlement_lag, calendar
                    ),
                    identifier=automatic_recharge_id(row.day, taken),
                    automatic=True,
                )
                logger.debug(
                    "Projected balance %.2f below floor %.2f on %s, requesting %.2f for %s",
                    projected,
                    params.minimum_balance,
                    row.day,
                    recharge.amount,
                    recharge.credit_date,
                )

            row.recharge = recharge

            credit_index = PayMediaEngine.row_index(rows, recharge.credit_date)
            if credit_index is None:
                # Credit lands past the horizon, nothing to propagate
                continue

            credit_row = rows[credit_index]
            credit_row.closing_balance += recharge.amount
            credit_row.credited += recharge.amount

            start = min(i, credit_index)
            PayMediaEngine.propagate_balances(rows, start, state, calendar)
            PayMediaEngine.project_from(rows, start, state, calendar)

        return rows

    @staticmethod
    def finalize_projections(rows: List[DayRow], state: CalculatorState) -> List[DayRow]:
        """Align every row's projection with the finished ledger (idempotent)"""
        PayMediaEngine.project_from(rows, 0, state, CalendarRules.from_state(state))
        return rows

    @staticmethod
    def recompute(state: CalculatorState) -> List[DayRow]:
        """Full recomputation: build, project, schedule recharges, project again"""
        rows = PayMediaEngine.build_initial_rows(state)
        PayMediaEngine.finalize_projections(rows, state)

        if state.parameters.automatic_recharges:
            PayMediaEngine.schedule_recharges(rows, state)
            PayMediaEngine.finalize_projections(rows, state)

        logger.info(
            "Recomputed %d rows from %s: %d recharges",
            len(rows),
            state.parameters.start_date,
            sum(1 for r in rows if r.recharge is not None),
        )
        return rows


# =============================================================================
# INPUT PARSING AND FORMATTING
# =============================================================================


def parse_amount(value: Any) -> float:
    """
    Parse a currency amount typed by the user.

    Accepts plain numbers or formatted text such as ``"$ 150.000"``; every
    non-digit character is dropped. Negative or empty input is rejected.
    """
    if isinstance(value, bool):
        raise InvalidInputError(f"Invalid amount: {value!r}")
    if isinstance(value, (int, float)):
        if value != value or value < 0:  # NaN or negative
            raise InvalidInputError(f"Amount must be a non-negative number, got {value}")
        return float(value)

    text = str(value).strip()
    if text.startswith("-"):
        raise InvalidInputError(f"Amount must be a non-negative number, got {text!r}")
    digits = re.sub(r"\D", "", text)
    if not digits:
        raise InvalidInputError(f"Invalid amount: {text!r}")
    return float(int(digits))


def parse_date(value: Any) -> date:
    """Parse an ISO ``YYYY-MM-DD`` date"""
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise InvalidInputError(f"Invalid date: {value!r}") from exc


def format_currency(value: float) -> str:
    """ARS style, no decimals: ``$ 150.000``"""
    rounded = int(round(abs(value)))
    body = f"{rounded:,}".replace(",", ".")
    sign = "-" if value < 0 and rounded else ""
    return f"{sign}$ {body}"


def format_row_date(day: date) -> str:
    return f"{WEEKDAY_NAMES_ES[day.weekday()]} {day:%d/%m/%y}"


def format_boolean(value: bool) -> str:
    return "SI" if value else "NO"


def rows_to_records(rows: List[DayRow]) -> List[Dict[str, Any]]:
    """Plain dicts with ISO dates, for JSON/CSV export and tables"""
    records = []
    for row in rows:
        recharge = row.recharge
        records.append(
            {
                "date": row.day.isoformat(),
                "is_working_day": row.is_working_day,
                "is_business_day": row.is_business_day,
                "opening_balance": row.opening_balance,
                "consumption": row.consumption,
                "special_consumption": row.special_consumption,
                "recharge_amount": recharge.amount if recharge else None,
                "recharge_request_date": recharge.request_date.isoformat() if recharge else None,
                "recharge_credit_date": recharge.credit_date.isoformat() if recharge else None,
                "recharge_id": recharge.identifier if recharge else None,
                "recharge_automatic": recharge.automatic if recharge else None,
                "credited": row.credited,
                "closing_balance": row.closing_balance,
                "projection_date": row.projection_date.isoformat(),
                "projected_balance": row.projected_balance,
            }
        )
    return records


def summarize_rows(rows: List[DayRow], minimum_balance: float) -> Dict[str, float]:
    """Headline numbers for a recomputed ledger"""
    if not rows:
        return {
            "lowest_closing": 0.0,
            "days_below_floor": 0,
            "recharge_count": 0,
            "automatic_recharge_count": 0,
            "total_recharged": 0.0,
            "total_consumption": 0.0,
            "final_balance": 0.0,
        }

    closing = np.array([r.closing_balance for r in rows], dtype=float)
    consumption = np.array([r.consumption for r in rows], dtype=float)
    recharges = [r.recharge for r in rows if r.recharge is not None]

    return {
        "lowest_closing": float(closing.min()),
        "days_below_floor": int(np.count_nonzero(closing < minimum_balance)),
        "recharge_count": len(recharges),
        "automatic_recharge_count": sum(1 for r in recharges if r.automatic),
        "total_recharged": float(sum(r.amount for r in recharges)),
        "total_consumption": float(consumption.sum()),
        "final_balance": float(closing[-1]),
    }


# =============================================================================
# STATE PERSISTENCE
# =============================================================================


def default_state_path() -> Path:
    return Path(os.environ.get(STATE_FILE_ENV, Path.home() / ".paymedia_state.json"))


def state_to_dict(state: CalculatorState) -> Dict[str, Any]:
    params = state.parameters
    overrides = state.overrides
    return {
        "parameters": {
            "start_date": params.start_date.isoformat(),
            "daily_budget": params.daily_budget,
            "initial_balance": params.initial_balance,
            "recharge_amount": params.recharge_amount,
            "settlement_lag": params.settlement_lag,
            "minimum_balance": params.minimum_balance,
            "rows": params.rows,
            "scheduled_weekdays": list(params.scheduled_weekdays),
            "automatic_recharges": params.automatic_recharges,
        },
        "overrides": {
            "holidays": [d.isoformat() for d in overrides.holidays],
            "non_working_days": [d.isoformat() for d in overrides.non_working_days],
            "working_days": [d.isoformat() for d in overrides.working_days],
            "special_consumptions": [
                {"date": c.day.isoformat(), "amount": c.amount}
                for c in overrides.special_consumptions
            ],
            "special_recharges": [
                {
                    "request_date": r.request_date.isoformat(),
                    "credit_date": r.credit_date.isoformat(),
                    "amount": r.amount,
                    "identifier": r.identifier,
                }
                for r in overrides.special_recharges
            ],
        },
    }


def _whole_number(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Expected a whole number, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"Expected a whole number, got {value!r}")
    return int(value)


def state_from_dict(data: Dict[str, Any]) -> CalculatorState:
    """Re-hydrate a snapshot; missing keys keep their defaults"""
    raw_params = data.get("parameters", {})
    raw_overrides = data.get("overrides", {})

    params: Dict[str, Any] = {}
    if "start_date" in raw_params:
        params["start_date"] = date.fromisoformat(raw_params["start_date"])
    for key in ("daily_budget", "initial_balance", "recharge_amount", "minimum_balance"):
        if key in raw_params:
            params[key] = float(raw_params[key])
    for key in ("settlement_lag", "rows"):
        if key in raw_params:
            params[key] = _whole_number(raw_params[key])
    if "scheduled_weekdays" in raw_params:
        params["scheduled_weekdays"] = tuple(
            _whole_number(d) for d in raw_params["scheduled_weekdays"]
        )
    if "automatic_recharges" in raw_params:
        params["automatic_recharges"] = bool(raw_params["automatic_recharges"])

    overrides: Dict[str, Any] = {}
    for key in ("holidays", "non_working_days", "working_days"):
        if key in raw_overrides:
            overrides[key] = tuple(date.fromisoformat(d) for d in raw_overrides[key])
    if "special_consumptions" in raw_overrides:
        overrides["special_consumptions"] = tuple(
            SpecialConsumption(day=date.fromisoformat(c["date"]), amount=float(c["amount"]))
            for c in raw_overrides["special_consumptions"]
        )
    if "special_recharges" in raw_overrides:
        overrides["special_recharges"] = tuple(
            SpecialRecharge(
                request_date=date.fromisoformat(r["request_date"]),
                credit_date=date.fromisoformat(r["credit_date"]),
                amount=float(r["amount"]),
                identifier=str(r["identifier"]),
            )
            for r in raw_overrides["special_recharges"]
        )

    return CalculatorState(
        parameters=CalculatorParameters(**params), overrides=Overrides(**overrides)
    )


def save_state(path: Path, state: CalculatorState) -> None:
    path = Path(path)
    path.write_text(json.dumps(state_to_dict(state), indent=2), encoding="utf-8")
    logger.info("Saved calculator state to %s", path)


def load_state(path: Path) -> CalculatorState:
    """Load a saved snapshot; missing or corrupt files fall back to defaults"""
    path = Path(path)
    if not path.exists():
        logger.info("No saved state at %s, using defaults", path)
        return CalculatorState()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("state snapshot must be a JSON object")
        state = state_from_dict(data)
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
        logger.warning("Could not restore state from %s (%s), using defaults", path, exc)
        return CalculatorState()

    logger.info("Loaded calculator state from %s", path)
    return state


# =============================================================================
# CALCULATOR SESSION (OVERRIDE STORE + MUTATIONS)
# =============================================================================


class PayMediaCalculator:
    """
    One calculator session: a state snapshot and the rows computed from it.

    Every mutation validates its input first, then swaps in a new snapshot and
    recomputes the whole ledger. Invalid input raises ``InvalidInputError`` and
    leaves the previous state untouched. When ``state_path`` is set, each
    committed snapshot is written there (last write wins).
    """

    def __init__(
        self, state: Optional[CalculatorState] = None, state_path: Optional[Path] = None
    ):
        self.state = state if state is not None else CalculatorState()
        self.state_path = Path(state_path) if state_path is not None else None
        self.rows: List[DayRow] = PayMediaEngine.recompute(self.state)

    @property
    def calendar(self) -> CalendarRules:
        return CalendarRules.from_state(self.state)

    def _commit(self, state: CalculatorState) -> None:
        rows = PayMediaEngine.recompute(state)
        self.state = state
        self.rows = rows
        if self.state_path is not None:
            save_state(self.state_path, state)

    def _replace_overrides(self, **changes: Any) -> None:
        overrides = replace(self.state.overrides, **changes)
        self._commit(replace(self.state, overrides=overrides))

    def update_parameters(self, **changes: Any) -> None:
        """Change any scalar parameter (budget, balance, lag, floor, rows, ...)"""
        try:
            parameters = replace(self.state.parameters, **changes)
        except (TypeError, ValueError) as exc:
            raise InvalidInputError(str(exc)) from exc
        logger.info("Updating parameters: %s", ", ".join(sorted(changes)))
        self._commit(replace(self.state, parameters=parameters))

    def reset(self) -> None:
        """Restore the default parameters and clear every override"""
        logger.info("Restoring default calculator state")
        self._commit(CalculatorState())

    def set_special_consumption(self, day: Any, amount: Any) -> None:
        day = parse_date(day)
        entry = SpecialConsumption(day=day, amount=parse_amount(amount))
        remaining = tuple(
            c for c in self.state.overrides.special_consumptions if c.day != day
        )
        self._replace_overrides(special_consumptions=remaining + (entry,))

    def clear_special_consumption(self, day: Any) -> None:
        day = parse_date(day)
        current = self.state.overrides.special_consumptions
        remaining = tuple(c for c in current if c.day != day)
        if len(remaining) == len(current):
            return
        self._replace_overrides(special_consumptions=remaining)

    def save_special_recharge(
        self,
        amount: Any,
        request_date: Any,
        credit_date: Any,
        identifier: Optional[str] = None,
        allow_non_business_day: bool = False,
    ) -> str:
        """
        Add a special recharge, or update the one with ``identifier``.

        Raises ``NonBusinessDayWarning`` when the credit date is not a bank
        business day, unless ``allow_non_business_day`` confirms it.
        Returns the recharge identifier.
        """
        amount = parse_amount(amount)
        request_date = parse_date(request_date)
        credit_date = parse_date(credit_date)
        if credit_date < request_date:
            raise InvalidInputError(
                f"Credit date {credit_date} is before request date {request_date}"
            )

        identifier = identifier or str(uuid.uuid4())
        others = tuple(
            r for r in self.state.overrides.special_recharges if r.identifier != identifier
        )
        if any(r.request_date == request_date for r in others):
            raise InvalidInputError(
                f"A special recharge is already requested on {request_date}"
            )

        if not self.calendar.is_business_day(credit_date):
            if not allow_non_business_day:
                raise NonBusinessDayWarning(credit_date)
            logger.warning(
                "Recharge %s credited on non-business day %s by user confirmation",
                identifier,
                credit_date,
            )

        entry = SpecialRecharge(
            request_date=request_date,
            credit_date=credit_date,
            amount=amount,
            identifier=identifier,
        )
        existing = self.state.overrides.special_recharges
        if len(others) == len(existing):
            updated = existing + (entry,)
        else:
            updated = tuple(entry if r.identifier == identifier else r for r in existing)
        self._replace_overrides(special_recharges=updated)
        return identifier

    def remove_special_recharge(self, identifier: str) -> None:
        current = self.state.overrides.special_recharges
        remaining = tuple(r for r in current if r.identifier != identifier)
        if len(remaining) == len(current):
            raise InvalidInputError(f"No special recharge with identifier {identifier!r}")
        self._replace_overrides(special_recharges=remaining)

    def toggle_working_day(self, day: Any) -> None:
        """
        Flip the working status of a day.

        Stored overrides for the day are dropped first; an override is only
        added back when the flipped status differs from the weekly schedule.
        """
        day = parse_date(day)
        overrides = self.state.overrides
        working = not self.calendar.is_working_day(day)
        scheduled = day.weekday() in self.state.parameters.scheduled_weekdays

        non_working_days = tuple(d for d in overrides.non_working_days if d != day)
        working_days = tuple(d for d in overrides.working_days if d != day)
        if working and not scheduled:
            working_days += (day,)
        elif not working and scheduled:
            non_working_days += (day,)
        self._replace_overrides(
            non_working_days=non_working_days, working_days=working_days
        )

    def toggle_holiday(self, day: Any) -> None:
        day = parse_date(day)
        self._replace_overrides(holidays=_toggle(self.state.overrides.holidays, day))


def _toggle(days: Tuple[date, ...], day: date) -> Tuple[date, ...]:
    if day in days:
        return tuple(d for d in days if d != day)
    return days + (day,)


# =============================================================================
# CLI INTERFACE
# =============================================================================


def _parse_weekdays(text: str) -> Tuple[int, ...]:
    try:
        return tuple(sorted({int(part) for part in text.split(",") if part.strip()}))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid weekday list: {text!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Pay Media Recharge Planner CLI")
    parser.add_argument("--cli", action="store_true", help="Run in CLI mode")
    parser.add_argument(
        "--state", type=Path, default=None, help="Saved state file to start from"
    )
    parser.add_argument("--start-date", type=parse_date, default=None, help="YYYY-MM-DD")
    parser.add_argument("--budget", type=parse_amount, default=None, help="Daily budget")
    parser.add_argument(
        "--initial-balance", type=parse_amount, default=None, help="Opening balance"
    )
    parser.add_argument(
        "--recharge-amount", type=parse_amount, default=None, help="Automatic recharge amount"
    )
    parser.add_argument(
        "--lag", type=int, default=None, help="Settlement lag in bank business days"
    )
    parser.add_argument("--floor", type=parse_amount, default=None, help="Minimum balance")
    parser.add_argument("--rows", type=int, default=None, help="Number of days to project")
    parser.add_argument(
        "--weekdays",
        type=_parse_weekdays,
        default=None,
        help="Scheduled working weekdays, 0=Monday (e.g. 0,1,2,3,4)",
    )
    parser.add_argument(
        "--no-auto-recharge",
        action="store_true",
        help="Disable automatic recharge scheduling",
    )
    parser.add_argument(
        "--output",
        choices=["summary", "detailed", "json"],
        default="summary",
        help="Output format",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Logging verbosity",
    )
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    """CLI interface for the planner"""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    state = load_state(args.state) if args.state else CalculatorState()

    changes: Dict[str, Any] = {}
    for attr, key in (
        ("start_date", "start_date"),
        ("budget", "daily_budget"),
        ("initial_balance", "initial_balance"),
        ("recharge_amount", "recharge_amount"),
        ("lag", "settlement_lag"),
        ("floor", "minimum_balance"),
        ("rows", "rows"),
        ("weekdays", "scheduled_weekdays"),
    ):
        value = getattr(args, attr)
        if value is not None:
            changes[key] = value
    if args.no_auto_recharge:
        changes["automatic_recharges"] = False

    try:
        state = replace(state, parameters=replace(state.parameters, **changes))
    except ValueError as exc:
        parser.error(str(exc))

    params = state.parameters
    rows = PayMediaEngine.recompute(state)

    if args.output == "json":
        print(json.dumps(rows_to_records(rows), indent=2))
    elif args.output == "detailed":
        print(f"Pay Media projection from {params.start_date.isoformat()}")
        print(
            f"Budget {format_currency(params.daily_budget)}/day, "
            f"floor {format_currency(params.minimum_balance)}, "
            f"lag {params.settlement_lag} business days"
        )
        print("-" * 118)
        print(
            "Fecha        | Háb | Lab |  Saldo inicio |      Consumo |  Acreditado "
            "|    Saldo fin |  Proyección | Saldo proy.  | Recarga"
        )
        print("-" * 118)
        for r in rows:
            recharge = ""
            if r.recharge is not None:
                kind = "auto" if r.recharge.automatic else "especial"
                recharge = (
                    f"{format_currency(r.recharge.amount)} -> "
                    f"{r.recharge.credit_date:%d/%m} ({kind})"
                )
            print(
                f"{format_row_date(r.day):12s} | {format_boolean(r.is_business_day):3s} | "
                f"{format_boolean(r.is_working_day):3s} | {format_currency(r.opening_balance):>13s} | "
                f"{format_currency(r.consumption):>12s} | {format_currency(r.credited):>11s} | "
                f"{format_currency(r.closing_balance):>12s} | {format_row_date(r.projection_date):>11s} | "
                f"{format_currency(r.projected_balance):>12s} | {recharge}"
            )
    else:  # summary
        summary = summarize_rows(rows, params.minimum_balance)
        print(f"PAY MEDIA SUMMARY from {params.start_date.isoformat()}")
        print(f"Days projected: {len(rows)}")
        print(f"Total consumption: {format_currency(summary['total_consumption'])}")
        print(
            f"Recharges: {summary['recharge_count']} "
            f"({summary['automatic_recharge_count']} automatic), "
            f"total {format_currency(summary['total_recharged'])}"
        )
        print(f"Lowest closing balance: {format_currency(summary['lowest_closing'])}")
        print(f"Days below floor: {summary['days_below_floor']}")
        print(f"Final balance: {format_currency(summary['final_balance'])}")

        requested = [r for r in rows if r.recharge is not None]
        if requested:
            print("\nRecharge requests:")
            for r in requested:
                print(
                    f"  {format_row_date(r.recharge.request_date)} -> "
                    f"{format_row_date(r.recharge.credit_date)}: "
                    f"{format_currency(r.recharge.amount)}"
                )
    return 0


# =============================================================================
# STREAMLIT UI
# =============================================================================


MAX_LAG_INPUT = 30
MAX_ROWS_INPUT = 366


def sidebar_limits(params: CalculatorParameters) -> Tuple[int, int]:
    """Upper bounds for the lag and row inputs, widened to fit a loaded snapshot"""
    return (
        max(MAX_LAG_INPUT, params.settlement_lag),
        max(MAX_ROWS_INPUT, params.rows),
    )


def build_balance_chart(rows: List[DayRow], minimum_balance: float) -> go.Figure:
    """Closing and projected balances against the floor, with credit markers"""
    dates = [r.day for r in rows]
    fig = go.Figure()

    fig.add_trace(
        go.Scatter(
            x=dates,
            y=[r.closing_balance for r in rows],
            mode="lines+markers",
            name="Saldo final",
            line=dict(color="#1f77b4", width=2),
            marker=dict(size=4),
        )
    )
    fig.add_trace(
        go.Scatter(
            x=dates,
            y=[r.projected_balance for r in rows],
            mode="lines",
            name="Saldo proyección",
            line=dict(color="#9467bd", width=2, dash="dot"),
        )
    )

    credited = [r for r in rows if r.credited > 0]
    if credited:
        fig.add_trace(
            go.Scatter(
                x=[r.day for r in credited],
                y=[r.closing_balance for r in credited],
                mode="markers",
                name="Recarga acreditada",
                marker=dict(color="#2ca02c", size=10, symbol="triangle-up"),
                text=[format_currency(r.credited) for r in credited],
                hovertemplate="%{x}<br>Acreditado %{text}<extra></extra>",
            )
        )

    fig.add_hline(
        y=minimum_balance,
        line_dash="dash",
        line_color="#d62728",
        annotation_text="Saldo mínimo",
        annotation_position="top left",
    )

    fig.update_layout(
        title="Evolución del saldo",
        xaxis_title="Fecha",
        yaxis_title="Saldo (ARS)",
        hovermode="x unified",
        legend=dict(orientation="h", yanchor="bottom", y=1.02, xanchor="right", x=1),
        margin=dict(t=80),
    )
    return fig


def run_streamlit_app() -> None:
    import streamlit as st

    st.set_page_config(
        page_title="Calculadora Pay Media",
        page_icon="💰",
        layout="wide",
        initial_sidebar_state="expanded",
    )

    if "calculator" not in st.session_state:
        state_path = default_state_path()
        st.session_state.calculator = PayMediaCalculator(
            load_state(state_path), state_path=state_path
        )
        st.session_state.pending_recharge = None

    calculator: PayMediaCalculator = st.session_state.calculator
    params = calculator.state.parameters
    rows = calculator.rows

    st.title("💰 Calculadora Pay Media")

    with st.expander("ℹ️ Instrucciones", expanded=False):
        st.markdown(
            """
        La calculadora estima el consumo de cada día a partir de los parámetros de
        configuración y proyecta los saldos a futuro de la cuenta. Con **Recargas
        automáticas** activado, propone las recargas necesarias para mantener el
        saldo mínimo.

        - **Presupuesto diario**: consumo de cada día laborable, limitado al saldo disponible.
        - **Monto de recarga**: monto de cada recarga automática.
        - **Plazo de acreditación**: días hábiles (sin fines de semana ni feriados)
          entre la solicitud y la acreditación de una recarga.
        - La proyección de cada día es el saldo al cierre del día en que se
          acreditaría una recarga solicitada hoy.

        No se contemplan impuestos ni gastos operativos. Los resultados son una
        estimación.
        """
        )

    # Sidebar configuration
    st.sidebar.title("🎛️ Configuración")
    max_lag, max_rows = sidebar_limits(params)
    with st.sidebar.form("parameters"):
        start_date = st.date_input("Fecha de inicio", value=params.start_date)
        budget_text = st.text_input(
            "Presupuesto diario", value=format_currency(params.daily_budget)
        )
        initial_text = st.text_input(
            "Saldo inicial", value=format_currency(params.initial_balance)
        )
        recharge_text = st.text_input(
            "Monto de recarga", value=format_currency(params.recharge_amount)
        )
        lag = st.number_input(
            "Plazo de acreditación (días hábiles)",
            min_value=0,
            max_value=max_lag,
            value=params.settlement_lag,
            step=1,
        )
        floor_text = st.text_input(
            "Saldo mínimo", value=format_currency(params.minimum_balance)
        )
        row_count = st.number_input(
            "Días a proyectar", min_value=1, max_value=max_rows, value=params.rows, step=1
        )
        weekdays = st.multiselect(
            "Días programados",
            options=list(range(7)),
            default=list(params.scheduled_weekdays),
            format_func=lambda d: WEEKDAY_NAMES_ES[d],
        )
        automatic = st.checkbox("Recargas automáticas", value=params.automatic_recharges)
        submitted = st.form_submit_button("Aplicar")

    if submitted:
        try:
            calculator.update_parameters(
                start_date=start_date,
                daily_budget=parse_amount(budget_text),
                initial_balance=parse_amount(initial_text),
                recharge_amount=parse_amount(recharge_text),
                settlement_lag=int(lag),
                minimum_balance=parse_amount(floor_text),
                rows=int(row_count),
                scheduled_weekdays=tuple(sorted(weekdays)),
                automatic_recharges=automatic,
            )
            st.rerun()
        except InvalidInputError as exc:
            st.sidebar.error(str(exc))

    if st.sidebar.button("Restaurar valores"):
        calculator.reset()
        st.session_state.pending_recharge = None
        st.rerun()

    # Summary metrics
    summary = summarize_rows(rows, params.minimum_balance)
    col1, col2, col3, col4, col5 = st.columns(5)
    col1.metric("Saldo mínimo alcanzado", format_currency(summary["lowest_closing"]))
    col2.metric("Días bajo el mínimo", summary["days_below_floor"])
    col3.metric(
        "Recargas",
        summary["recharge_count"],
        help=f"{summary['automatic_recharge_count']} automáticas",
    )
    col4.metric("Total recargado", format_currency(summary["total_recharged"]))
    col5.metric("Consumo total", format_currency(summary["total_consumption"]))

    st.plotly_chart(
        build_balance_chart(rows, params.minimum_balance), use_container_width=True
    )

    # Ledger table
    st.subheader("📅 Proyección diaria")
    today = date.today()
    holidays = set(calculator.state.overrides.holidays)
    table = []
    for r in rows:
        label = format_row_date(r.day)
        if r.day == today:
            label += " (Hoy)"
        if r.day in holidays:
            label += " (Feriado)"
        recharge = ""
        if r.recharge is not None:
            recharge = f"{format_currency(r.recharge.amount)} → {r.recharge.credit_date:%d/%m}"
            if not r.recharge.automatic:
                recharge += " (especial)"
        table.append(
            {
                "Hábil": r.is_business_day,
                "Fecha": label,
                "Laborable": r.is_working_day,
                "Saldo inicial": format_currency(r.opening_balance),
                "Consumo": format_currency(r.consumption)
                + (" ✎" if r.special_consumption else ""),
                "Recarga": format_currency(r.credited) if r.credited else "",
                "Saldo final": format_currency(r.closing_balance),
                "Fecha proyección": format_row_date(r.projection_date),
                "Saldo proyección": format_currency(r.projected_balance),
                "Recarga solicitada": recharge,
            }
        )
    st.dataframe(table, use_container_width=True, hide_index=True)

    first_day, last_day = rows[0].day, rows[-1].day
    consumption_tab, recharge_tab, calendar_tab = st.tabs(
        ["Consumo especial", "Recargas especiales", "Días laborables y feriados"]
    )

    with consumption_tab:
        day = st.date_input(
            "Fecha", value=first_day, min_value=first_day, max_value=last_day,
            key="consumption_day",
        )
        amount_text = st.text_input("Consumo", value="0", key="consumption_amount")
        save_col, clear_col = st.columns(2)
        if save_col.button("Guardar consumo"):
            try:
                calculator.set_special_consumption(day, amount_text)
                st.rerun()
            except InvalidInputError as exc:
                st.error(str(exc))
        if clear_col.button("Quitar consumo especial"):
            calculator.clear_special_consumption(day)
            st.rerun()
        for c in calculator.state.overrides.special_consumptions:
            st.caption(f"{format_row_date(c.day)}: {format_currency(c.amount)}")

    with recharge_tab:
        recharges = {r.recharge.identifier: r.recharge for r in rows if r.recharge is not None}
        options = ["nueva"] + list(recharges)
        selected = st.selectbox(
            "Recarga",
            options=options,
            format_func=lambda key: "Nueva recarga"
            if key == "nueva"
            else (
                f"{format_row_date(recharges[key].request_date)} "
                f"{format_currency(recharges[key].amount)}"
            ),
        )
        current = recharges.get(selected)
        request_day = st.date_input(
            "Fecha de solicitud",
            value=current.request_date if current else first_day,
            key=f"request_{selected}",
        )
        credit_day = st.date_input(
            "Fecha de acreditación",
            value=current.credit_date if current else first_day,
            key=f"credit_{selected}",
        )
        recharge_text = st.text_input(
            "Monto",
            value=format_currency(current.amount if current else params.recharge_amount),
            key=f"amount_{selected}",
        )
        identifier = None if selected == "nueva" else selected

        save_col, delete_col = st.columns(2)
        if save_col.button("Guardar recarga"):
            try:
                calculator.save_special_recharge(
                    recharge_text, request_day, credit_day, identifier=identifier
                )
                st.session_state.pending_recharge = None
                st.rerun()
            except NonBusinessDayWarning:
                st.session_state.pending_recharge = (
                    recharge_text, request_day, credit_day, identifier
                )
            except InvalidInputError as exc:
                st.error(str(exc))

        pending = st.session_state.pending_recharge
        if pending is not None:
            st.warning(
                "La fecha de acreditación no es un día hábil. ¿Desea continuar de todos modos?"
            )
            if st.button("Continuar de todos modos"):
                try:
                    calculator.save_special_recharge(*pending, allow_non_business_day=True)
                except InvalidInputError as exc:
                    st.error(str(exc))
                st.session_state.pending_recharge = None
                st.rerun()

        if identifier and calculator.state.overrides.find_recharge(identifier):
            if delete_col.button("Eliminar recarga especial"):
                calculator.remove_special_recharge(identifier)
                st.rerun()

    with calendar_tab:
        day = st.date_input(
            "Fecha", value=first_day, min_value=first_day, max_value=last_day,
            key="calendar_day",
        )
        working_col, holiday_col = st.columns(2)
        if working_col.button("Alternar laborable"):
            calculator.toggle_working_day(day)
            st.rerun()
        if holiday_col.button("Alternar feriado"):
            calculator.toggle_holiday(day)
            st.rerun()

    records = rows_to_records(rows)
    csv_lines = [",".join(records[0].keys())]
    for record in records:
        csv_lines.append(",".join("" if v is None else str(v) for v in record.values()))
    st.download_button(
        "Descargar CSV", "\n".join(csv_lines), "paymedia_proyeccion.csv", "text/csv"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    if "--cli" in sys.argv:
        sys.exit(run_cli())
    run_streamlit_app()
