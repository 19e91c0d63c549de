# src/engine/resolver.py — v1
"""Identifier resolver — evaluate identifier expressions against an event.

Every resolution either yields a non-empty string or None ("no match").
Nothing here raises for missing data: an absent attribute is the normal
reason an event does not produce an entity.
"""

from __future__ import annotations

from collections.abc import Sequence

from entitysynth.core.models import Event
from entitysynth.core.values import attribute_value
from entitysynth.rules.models import (
    PLACEHOLDER_RE,
    AccountSource,
    AttributeExpr,
    AttributeFragment,
    FragmentsExpr,
    LiteralFragment,
    TemplateExpr,
)

Expression = AttributeExpr | TemplateExpr | FragmentsExpr


def resolve_expression(expr: Expression, event: Event) -> str | None:
    """Resolve an identifier expression; None when any required part is absent."""
    if isinstance(expr, AttributeExpr):
        return attribute_value(event, expr.attribute)
    if isinstance(expr, TemplateExpr):
        return resolve_template(expr.template, event)
    if isinstance(expr, FragmentsExpr):
        return resolve_fragments(expr, event)
    raise TypeError(f"Unsupported expression type: {type(expr).__name__}")


def resolve_template(template: str, event: Event) -> str | None:
    """Substitute ``{{ attribute }}`` placeholders; None if any is absent."""
    missing = False

    def _substitute(match) -> str:
        nonlocal missing
        value = attribute_value(event, match.group(1))
        if value is None:
            missing = True
            return ""
        return value

    result = PLACEHOLDER_RE.sub(_substitute, template)
    if missing or not result:
        return None
    return result


def resolve_fragments(expr: FragmentsExpr, event: Event) -> str | None:
    """Concatenate fragments in order; None if a required attribute is absent."""
    parts: list[str] = []
    for fragment in expr.fragments:
        if isinstance(fragment, LiteralFragment):
            parts.append(fragment.value)
        elif isinstance(fragment, AttributeFragment):
            value = attribute_value(event, fragment.attribute)
            if value is None:
                if fragment.required:
                    return None
                continue
            parts.append(value)
        else:
            # FragmentRef must have been expanded by the loader.
            raise TypeError(f"Unexpanded fragment reference: {fragment!r}")
    result = "".join(parts)
    return result or None


def resolve_fallback(attributes: Sequence[str], event: Event) -> str | None:
    """First present attribute value in declared order, or None."""
    for attribute in attributes:
        value = attribute_value(event, attribute)
        if value is not None:
            return value
    return None


def resolve_account(account: AccountSource, event: Event) -> int | None:
    """Account id from a fixed value or an integer-valued attribute."""
    if account.value is not None:
        return account.value
    raw = attribute_value(event, account.attribute or "")
    if raw is None or not raw.isdigit():
        return None
    return int(raw)


def expression_attributes(expr: Expression) -> list[str]:
    """Attribute names an expression reads, in order of appearance."""
    if isinstance(expr, AttributeExpr):
        return [expr.attribute]
    if isinstance(expr, TemplateExpr):
        return expr.placeholders
    return [f.attribute for f in expr.fragments if isinstance(f, AttributeFragment)]
