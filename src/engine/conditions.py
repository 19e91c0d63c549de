# src/engine/conditions.py — v1
"""Condition evaluation — all conditions of a rule must hold (logical AND)."""

from __future__ import annotations

from collections.abc import Sequence

from entitysynth.core.models import Event
from entitysynth.core.values import attribute_value, to_attribute_string
from entitysynth.rules.models import Condition


def evaluate_condition(condition: Condition, event: Event) -> bool:
    """Evaluate one predicate against an event.

    Values are compared in canonical string form, so a rule written as
    ``value: 1`` matches an event carrying ``1``, ``1.0`` or ``"1"``.
    """
    actual = attribute_value(event, condition.attribute)

    if condition.present is not None:
        result = (actual is not None) == condition.present
    elif condition.one_of is not None:
        result = actual is not None and actual in {
            to_attribute_string(v) for v in condition.one_of
        }
    elif condition.prefix is not None:
        result = actual is not None and actual.startswith(condition.prefix)
    else:
        result = actual is not None and actual == to_attribute_string(condition.value)

    return not result if condition.negate else result


def conditions_hold(conditions: Sequence[Condition], event: Event) -> bool:
    """True when every condition holds; an empty list always holds."""
    return all(evaluate_condition(c, event) for c in conditions)
