#!/usr/bin/env python3
"""
Ledger invariants checked over a spread of configurations
Balance chain, closing formula, consumption rule and floor sufficiency.
"""

from datetime import date, timedelta

import pytest

from paymedia_simulator import (
    DEFAULT_HOLIDAYS,
    CalculatorParameters,
    CalculatorState,
    CalendarRules,
    Overrides,
    PayMediaEngine,
    SpecialConsumption,
    SpecialRecharge,
)


def _state(start, overrides=None, **params):
    return CalculatorState(
        parameters=CalculatorParameters(start_date=start, **params),
        overrides=overrides if overrides is not None else Overrides(holidays=()),
    )


SCENARIOS = {
    "reference": _state(date(2025, 1, 6), rows=10),
    "default_holidays_90_days": CalculatorState(
        parameters=CalculatorParameters(start_date=date(2025, 2, 24), rows=90),
        overrides=Overrides(holidays=DEFAULT_HOLIDAYS),
    ),
    "weekend_schedule": _state(
        date(2025, 1, 1), rows=45, scheduled_weekdays=(5, 6), daily_budget=90000.0
    ),
    "every_day_schedule": _state(
        date(2025, 6, 2), rows=60, scheduled_weekdays=(0, 1, 2, 3, 4, 5, 6)
    ),
    "zero_lag": _state(date(2025, 1, 6), rows=30, settlement_lag=0),
    "long_lag": _state(date(2025, 1, 6), rows=60, settlement_lag=5),
    "small_balance": _state(
        date(2025, 4, 7), rows=30, initial_balance=160000.0, minimum_balance=100000.0
    ),
    "with_overrides": _state(
        date(2025, 1, 6),
        rows=40,
        overrides=Overrides(
            holidays=(date(2025, 1, 20),),
            non_working_days=(date(2025, 1, 15),),
            working_days=(date(2025, 1, 18),),
            special_consumptions=(
                SpecialConsumption(date(2025, 1, 8), 0.0),
                SpecialConsumption(date(2025, 1, 22), 250000.0),
            ),
            special_recharges=(
                SpecialRecharge(
                    request_date=date(2025, 1, 13),
                    credit_date=date(2025, 1, 16),
                    amount=200000.0,
                    identifier="manual-a",
                ),
                SpecialRecharge(
                    request_date=date(2025, 1, 3),
                    credit_date=date(2025, 1, 7),
                    amount=100000.0,
                    identifier="before-start",
                ),
            ),
        ),
    ),
}


def _expected_credits(rows, state):
    credits = {}
    attached = set()
    for row in rows:
        if row.recharge is not None:
            attached.add(row.recharge.identifier)
            credits[row.recharge.credit_date] = (
                credits.get(row.recharge.credit_date, 0.0) + row.recharge.amount
            )
    for special in state.overrides.special_recharges:
        if special.identifier not in attached:
            credits[special.credit_date] = (
                credits.get(special.credit_date, 0.0) + special.amount
            )
    return credits


@pytest.mark.parametrize("name", sorted(SCENARIOS))
class TestLedgerInvariants:
    """Invariants that hold for every recomputed ledger"""

    def test_row_count_and_order(self, name):
        state = SCENARIOS[name]
        rows = PayMediaEngine.recompute(state)
        assert len(rows) == state.parameters.rows
        for offset, row in enumerate(rows):
            assert row.day == state.parameters.start_date + timedelta(days=offset)

    def test_opening_balance_chain(self, name):
        state = SCENARIOS[name]
        rows = PayMediaEngine.recompute(state)
        assert rows[0].opening_balance == state.parameters.initial_balance
        for previous, row in zip(rows, rows[1:]):
            assert row.opening_balance == pytest.approx(previous.closing_balance)

    def test_closing_balance_formula(self, name):
        state = SCENARIOS[name]
        rows = PayMediaEngine.recompute(state)
        credits = _expected_credits(rows, state)
        for row in rows:
            expected = row.opening_balance - row.consumption + credits.get(row.day, 0.0)
            assert row.closing_balance == pytest.approx(expected)

    def test_consumption_rule(self, name):
        state = SCENARIOS[name]
        rows = PayMediaEngine.recompute(state)
        calendar = CalendarRules.from_state(state)
        special = {c.day: c.amount for c in state.overrides.special_consumptions}
        for row in rows:
            if row.day in special:
                assert row.special_consumption
                assert row.consumption == special[row.day]
            elif calendar.is_working_day(row.day):
                expected = max(
                    0.0, min(state.parameters.daily_budget, row.opening_balance)
                )
                assert row.consumption == pytest.approx(expected)
            else:
                assert row.consumption == 0.0

    def test_recharge_identifiers_unique(self, name):
        rows = PayMediaEngine.recompute(SCENARIOS[name])
        identifiers = [row.recharge.identifier for row in rows if row.recharge]
        assert len(identifiers) == len(set(identifiers))

    def test_automatic_recharge_sufficiency(self, name):
        """Business days without a special recharge project at or above the floor"""
        state = SCENARIOS[name]
        rows = PayMediaEngine.recompute(state)
        by_day = {row.day: row for row in rows}
        floor = state.parameters.minimum_balance
        for row in rows:
            if not row.is_business_day:
                continue
            if row.recharge is not None and not row.recharge.automatic:
                continue
            if row.projection_date not in by_day:
                continue  # horizon truncation
            assert row.projected_balance >= floor

    def test_recompute_is_idempotent(self, name):
        state = SCENARIOS[name]
        assert PayMediaEngine.recompute(state) == PayMediaEngine.recompute(state)
