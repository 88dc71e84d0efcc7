#!/usr/bin/env python3
"""
Test suite for the recharge scheduler
Walks the reference scenario day by day: Monday start, Mon-Fri schedule,
budget 150.000, balance 500.000, lag 3, floor 150.000, recharge 500.000.
"""

import copy
from datetime import date

import pytest

from paymedia_simulator import (
    CalculatorParameters,
    CalculatorState,
    Overrides,
    PayMediaEngine,
    SpecialConsumption,
    SpecialRecharge,
    automatic_recharge_id,
)

MONDAY = date(2025, 1, 6)


def make_state(rows=10, overrides=None, **params):
    return CalculatorState(
        parameters=CalculatorParameters(start_date=MONDAY, rows=rows, **params),
        overrides=overrides if overrides is not None else Overrides(holidays=()),
    )


class TestReferenceScenario:
    """Automatic recharges for the reference scenario"""

    def test_first_row_closing_balance(self):
        rows = PayMediaEngine.recompute(make_state())
        assert rows[0].closing_balance == 350000.0

    def test_recharge_requested_when_projection_dips(self):
        rows = PayMediaEngine.recompute(make_state())
        requested = [i for i, row in enumerate(rows) if row.recharge is not None]
        assert requested == [0, 3]

        first = rows[0].recharge
        assert first.automatic
        assert first.amount == 500000.0
        assert first.request_date == MONDAY
        assert first.credit_date == date(2025, 1, 9)  # Thursday

    def test_credit_skips_weekend(self):
        """Thursday request lands on Tuesday, three business days later"""
        rows = PayMediaEngine.recompute(make_state())
        second = rows[3].recharge
        assert second.request_date == date(2025, 1, 9)
        assert second.credit_date == date(2025, 1, 14)

    def test_closing_balances(self):
        rows = PayMediaEngine.recompute(make_state())
        assert [row.closing_balance for row in rows] == [
            350000.0,
            200000.0,
            50000.0,
            500000.0,
            350000.0,
            350000.0,
            350000.0,
            200000.0,
            550000.0,
            400000.0,
        ]
        assert rows[3].credited == 500000.0
        assert rows[8].credited == 500000.0

    def test_final_projections(self):
        rows = PayMediaEngine.recompute(make_state())
        assert [row.projected_balance for row in rows] == [
            500000.0,
            350000.0,
            200000.0,
            550000.0,
            400000.0,
            400000.0,
            400000.0,
            500000.0,  # settlement dates past the horizon fall back
            500000.0,
            500000.0,
        ]

    def test_projection_never_below_floor_on_business_days(self):
        rows = PayMediaEngine.recompute(make_state())
        for row in rows:
            if row.is_business_day:
                assert row.projected_balance >= 150000.0

    def test_automatic_recharges_disabled(self):
        rows = PayMediaEngine.recompute(make_state(automatic_recharges=False))
        assert all(row.recharge is None for row in rows)
        assert [row.closing_balance for row in rows][:4] == [
            350000.0,
            200000.0,
            50000.0,
            0.0,
        ]

    def test_schedule_is_noop_when_disabled(self):
        state = make_state(automatic_recharges=False)
        rows = PayMediaEngine.build_initial_rows(state)
        before = copy.deepcopy(rows)
        assert PayMediaEngine.schedule_recharges(rows, state) is rows
        assert rows == before


class TestSchedulerRules:
    """Precedence and edge cases of the scheduling pass"""

    def test_special_recharge_never_overwritten(self):
        special = SpecialRecharge(
            request_date=MONDAY,
            credit_date=date(2025, 1, 9),
            amount=100000.0,
            identifier="manual-1",
        )
        rows = PayMediaEngine.recompute(
            make_state(overrides=Overrides(holidays=(), special_recharges=(special,)))
        )
        assert rows[0].recharge.identifier == "manual-1"
        assert rows[0].recharge.amount == 100000.0
        assert not rows[0].recharge.automatic

        # Friday projection is short, so Tuesday requests the top-up
        assert rows[1].recharge.automatic
        assert rows[1].recharge.credit_date == date(2025, 1, 10)
        assert rows[4].closing_balance == 500000.0

    def test_recharges_only_requested_on_business_days(self):
        rows = PayMediaEngine.recompute(
            make_state(rows=30, overrides=Overrides(holidays=(date(2025, 1, 9),)))
        )
        for row in rows:
            if row.recharge is not None and row.recharge.automatic:
                assert row.is_business_day

    def test_holiday_shifts_credit_date(self):
        rows = PayMediaEngine.recompute(
            make_state(overrides=Overrides(holidays=(date(2025, 1, 9),)))
        )
        # Thursday is a holiday, so Monday + 3 business days is Friday
        assert rows[0].recharge.credit_date == date(2025, 1, 10)

    def test_zero_lag_settles_same_day(self):
        rows = PayMediaEngine.recompute(
            make_state(
                rows=5,
                settlement_lag=0,
                initial_balance=200000.0,
                minimum_balance=100000.0,
            )
        )
        first = rows[0].recharge
        assert first.credit_date == first.request_date == MONDAY
        assert rows[0].closing_balance == 200000.0 - 150000.0 + 500000.0
        assert rows[3].recharge is None
        assert rows[4].recharge.credit_date == rows[4].day

    def test_special_consumption_and_recharge_same_day(self):
        """The override fixes the consumption, the special recharge is kept"""
        special = SpecialRecharge(
            request_date=MONDAY, credit_date=MONDAY, amount=200000.0, identifier="both"
        )
        overrides = Overrides(
            holidays=(),
            special_consumptions=(SpecialConsumption(MONDAY, 50000.0),),
            special_recharges=(special,),
        )
        rows = PayMediaEngine.recompute(make_state(overrides=overrides))
        assert rows[0].consumption == 50000.0
        assert rows[0].special_consumption
        assert rows[0].recharge.identifier == "both"
        assert rows[0].closing_balance == 500000.0 - 50000.0 + 200000.0

    def test_upstream_recharge_updates_downstream_consumption(self):
        """A capped consumption grows back to the budget once money arrives"""
        rows = PayMediaEngine.recompute(make_state(initial_balance=200000.0))
        for row in rows:
            if row.is_working_day and row.opening_balance >= 150000.0:
                assert row.consumption == 150000.0

    def test_automatic_identifiers_are_stable_and_unique(self):
        rows = PayMediaEngine.recompute(make_state(rows=40))
        identifiers = [row.recharge.identifier for row in rows if row.recharge]
        assert len(identifiers) == len(set(identifiers))
        assert rows[0].recharge.identifier == automatic_recharge_id(MONDAY)

    def test_automatic_identifier_skips_pinned_identifier(self):
        pinned = SpecialRecharge(
            request_date=date(2025, 1, 7),
            credit_date=date(2025, 1, 10),
            amount=500000.0,
            identifier=automatic_recharge_id(MONDAY),
        )
        rows = PayMediaEngine.recompute(
            make_state(overrides=Overrides(holidays=(), special_recharges=(pinned,)))
        )
        assert rows[0].recharge.automatic
        assert rows[0].recharge.identifier == automatic_recharge_id(
            MONDAY, frozenset({pinned.identifier})
        )
        identifiers = [row.recharge.identifier for row in rows if row.recharge]
        assert len(identifiers) == len(set(identifiers))

    def test_salted_identifier_is_deterministic(self):
        taken = frozenset({automatic_recharge_id(MONDAY)})
        salted = automatic_recharge_id(MONDAY, taken)
        assert salted not in taken
        assert salted == automatic_recharge_id(MONDAY, taken)

    def test_credit_past_horizon_is_not_propagated(self):
        """Low initial balance triggers a request whose credit is out of range"""
        rows = PayMediaEngine.recompute(
            make_state(rows=3, initial_balance=100000.0, settlement_lag=3)
        )
        assert rows[0].recharge is not None
        assert rows[0].recharge.credit_date == date(2025, 1, 9)
        assert all(row.credited == 0.0 for row in rows)
        assert rows[-1].closing_balance == 0.0


class TestRecomputeDeterminism:
    """Recomputation is total and idempotent"""

    def test_recompute_twice_is_identical(self):
        overrides = Overrides(
            special_consumptions=(SpecialConsumption(date(2025, 2, 3), 0.0),),
            special_recharges=(
                SpecialRecharge(
                    request_date=date(2025, 2, 10),
                    credit_date=date(2025, 2, 12),
                    amount=750000.0,
                    identifier="manual-x",
                ),
            ),
        )
        state = CalculatorState(
            parameters=CalculatorParameters(start_date=date(2025, 1, 27), rows=60),
            overrides=overrides,
        )
        assert PayMediaEngine.recompute(state) == PayMediaEngine.recompute(state)

    def test_finalize_projections_is_idempotent(self):
        state = make_state(rows=30)
        rows = PayMediaEngine.recompute(state)
        once = copy.deepcopy(rows)
        PayMediaEngine.finalize_projections(rows, state)
        assert rows == once

    def test_recompute_does_not_mutate_state(self):
        state = make_state(rows=30)
        snapshot = copy.deepcopy(state)
        PayMediaEngine.recompute(state)
        assert state == snapshot

    @pytest.mark.parametrize("lag", [0, 1, 2, 5])
    def test_credit_dates_match_settlement(self, lag):
        state = make_state(rows=30, settlement_lag=lag)
        rows = PayMediaEngine.recompute(state)
        for row in rows:
            if row.recharge is not None:
                assert row.recharge.credit_date == row.projection_date
