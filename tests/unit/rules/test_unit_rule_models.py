# tests/unit/rules/test_unit_rule_models.py — v1
"""Tests for rules/models.py — expression, condition and rule-set models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from entitysynth.rules.models import (
    AttributeExpr,
    Condition,
    RuleSet,
    SynthesisRule,
    TagMapping,
    TemplateExpr,
)


def _rule(name, event_types=(), priority=100, order=0, type_="MESSAGE_QUEUE_CLUSTER"):
    return SynthesisRule(
        name=name,
        event_types=event_types,
        domain="INFRA",
        type=type_,
        identifier=AttributeExpr(attribute="clusterName"),
        priority=priority,
        order=order,
    )


class TestTemplateExpr:
    def test_placeholders(self):
        expr = TemplateExpr(template="{{accountId}}:{{ region }}:{{clusterName}}")
        assert expr.placeholders == ["accountId", "region", "clusterName"]

    def test_requires_placeholder(self):
        with pytest.raises(ValidationError, match="placeholder"):
            TemplateExpr(template="static")

    def test_unbalanced_braces(self):
        with pytest.raises(ValidationError, match="unbalanced"):
            TemplateExpr(template="{{a}}:{{b")

    def test_placeholder_with_space_rejected(self):
        with pytest.raises(ValidationError, match="invalid placeholder"):
            TemplateExpr(template="{{cluster name}}")


class TestCondition:
    def test_exactly_one_operator(self):
        with pytest.raises(ValidationError, match="exactly one"):
            Condition(attribute="a", value="x", prefix="y")

    def test_no_operator(self):
        with pytest.raises(ValidationError, match="exactly one"):
            Condition(attribute="a")

    def test_operator_names(self):
        assert Condition(attribute="a", value=1).operator == "equals"
        assert Condition(attribute="a", one_of=(1, 2)).operator == "one_of"
        assert Condition(attribute="a", present=True).operator == "present"


class TestTagMapping:
    def test_attribute_chain(self):
        mapping = TagMapping(source="A", target="t", fallbacks=("B", "C"))
        assert mapping.attribute_chain == ("A", "B", "C")

    def test_ttl_must_be_positive(self):
        with pytest.raises(ValidationError):
            TagMapping(source="A", target="t", ttl_s=0)


class TestSynthesisRule:
    def test_frozen_and_extra_forbidden(self):
        with pytest.raises(ValidationError):
            SynthesisRule(
                name="r", domain="INFRA", type="HOST",
                identifier=AttributeExpr(attribute="h"), colour="red",
            )

    def test_applies_to(self):
        assert _rule("r", ("A",)).applies_to("A")
        assert not _rule("r", ("A",)).applies_to("B")
        assert _rule("wild").applies_to("anything")


class TestRuleSet:
    def test_candidates_sorted_by_priority_then_order(self):
        rs = RuleSet(
            version="v",
            synthesis=(
                _rule("late", ("A",), priority=100, order=0),
                _rule("early", ("A",), priority=10, order=1),
                _rule("tie", ("A",), priority=100, order=2),
            ),
        )
        assert [r.name for r in rs.synthesis_rules_for("A")] == ["early", "late", "tie"]

    def test_wildcard_included_in_order(self):
        rs = RuleSet(
            version="v",
            synthesis=(_rule("typed", ("A",), order=1), _rule("wild", order=0)),
        )
        assert [r.name for r in rs.synthesis_rules_for("A")] == ["wild", "typed"]
        assert [r.name for r in rs.synthesis_rules_for("Other")] == ["wild"]
        assert [r.name for r in rs.synthesis_rules_for(None)] == ["wild"]

    def test_empty(self):
        rs = RuleSet.empty()
        assert rs.rule_count == 0
        assert rs.synthesis_rules_for("A") == ()
