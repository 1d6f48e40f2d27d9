# tests/unit/test_status_rollup.py
from __future__ import annotations

import pytest

from app.domain.errors import StateTransitionError
from app.models.enums import ItemStatus
from app.services.order_status_service import (
    TERMINAL,
    can_transition,
    ensure_transition,
    rollup_order_status,
)


@pytest.mark.parametrize(
    "items, expected",
    [
        (["cancelled", "cancelled"], "cancelled"),
        (["completed", "completed"], "completed"),
        (["pending", "shipped"], "pending"),
        (["confirmed", "shipped", "completed"], "confirmed"),
        (["shipped", "cancelled"], "shipped"),
        (["completed", "cancelled"], "completed"),
        (["return", "completed"], "return"),
        (["return"], "return"),
    ],
)
def test_rollup(items, expected):
    assert rollup_order_status(items) == expected


def test_rollup_of_nothing_keeps_current_status():
    assert rollup_order_status([]) is None


@pytest.mark.parametrize(
    "current, target",
    [
        ("pending", "confirmed"),
        ("confirmed", "shipped"),
        ("shipped", "completed"),
        ("pending", "cancelled"),
        ("confirmed", "cancelled"),
        ("shipped", "return"),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)
    ensure_transition(current, target)


@pytest.mark.parametrize(
    "current, target",
    [
        ("shipped", "cancelled"),
        ("pending", "shipped"),
        ("pending", "return"),
        ("confirmed", "completed"),
        ("completed", "return"),
        ("cancelled", "pending"),
        ("return", "shipped"),
        ("pending", "nonsense"),
    ],
)
def test_rejected_transitions(current, target):
    assert not can_transition(current, target)
    with pytest.raises(StateTransitionError) as ei:
        ensure_transition(current, target)
    assert ei.value.context == {"current": current, "target": target}


def test_terminal_states_have_no_way_out():
    assert TERMINAL == {ItemStatus.COMPLETED, ItemStatus.CANCELLED, ItemStatus.RETURN}
    for s in TERMINAL:
        for t in ItemStatus:
            assert not can_transition(s.value, t.value)
