# src/rules/models.py — v1
"""Declarative rule models: synthesis rules, relationship rules, rule sets.

Rules are data. Identifier expressions and relationship endpoint strategies
are tagged variants (``kind`` discriminator) interpreted by the engines;
provider differences live in separate rule sets, never in code branches.
All models are frozen so a loaded RuleSet can be shared between workers.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    field_validator,
    model_validator,
)

ConditionValue = Union[str, int, float, bool]

# {{ attribute }} with optional inner whitespace.
PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# === IDENTIFIER EXPRESSIONS ===


class AttributeExpr(_Frozen):
    """Direct reference to one event attribute."""

    kind: Literal["attribute"] = "attribute"
    attribute: str = Field(min_length=1)


class TemplateExpr(_Frozen):
    """Templated string with ``{{ attribute }}`` placeholders."""

    kind: Literal["template"] = "template"
    template: str = Field(min_length=1)

    @field_validator("template")
    @classmethod
    def _well_formed(cls, v: str) -> str:
        names = PLACEHOLDER_RE.findall(v)
        if not names:
            raise ValueError(f"template {v!r} has no {{{{ attribute }}}} placeholder")
        for name in names:
            if not name or any(c.isspace() for c in name):
                raise ValueError(f"template {v!r} has an invalid placeholder {name!r}")
        leftover = PLACEHOLDER_RE.sub("", v)
        if "{{" in leftover or "}}" in leftover:
            raise ValueError(f"template {v!r} has unbalanced braces")
        return v

    @property
    def placeholders(self) -> list[str]:
        return PLACEHOLDER_RE.findall(self.template)


class LiteralFragment(_Frozen):
    kind: Literal["literal"] = "literal"
    value: str


class AttributeFragment(_Frozen):
    kind: Literal["attribute"] = "attribute"
    attribute: str = Field(min_length=1)
    required: bool = True


class FragmentRef(_Frozen):
    """Reference to a named fragment list; expanded away by the loader."""

    kind: Literal["ref"] = "ref"
    ref: str = Field(min_length=1)


Fragment = Annotated[
    Union[LiteralFragment, AttributeFragment, FragmentRef],
    Field(discriminator="kind"),
]


class FragmentsExpr(_Frozen):
    """Ordered concatenation of literal and attribute fragments."""

    kind: Literal["fragments"] = "fragments"
    fragments: tuple[Fragment, ...] = Field(min_length=1)


IdentifierExpr = Annotated[
    Union[AttributeExpr, TemplateExpr, FragmentsExpr],
    Field(discriminator="kind"),
]


# === CONDITIONS & TAGS ===


class Condition(_Frozen):
    """Attribute predicate. Exactly one operator must be set."""

    attribute: str = Field(min_length=1)
    value: ConditionValue | None = None
    one_of: tuple[ConditionValue, ...] | None = None
    present: bool | None = None
    prefix: str | None = None
    negate: bool = False

    @model_validator(mode="after")
    def _exactly_one_operator(self) -> Condition:
        ops = [
            name
            for name in ("value", "one_of", "present", "prefix")
            if getattr(self, name) is not None
        ]
        if len(ops) != 1:
            raise ValueError(
                f"condition on {self.attribute!r} needs exactly one of "
                f"value/one_of/present/prefix, got {ops or 'none'}"
            )
        return self

    @property
    def operator(self) -> str:
        for name in ("value", "one_of", "present", "prefix"):
            if getattr(self, name) is not None:
                return "equals" if name == "value" else name
        return "equals"


class TagMapping(_Frozen):
    """Maps an event attribute (with fallbacks) to an entity tag."""

    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    fallbacks: tuple[str, ...] = ()
    ttl_s: int | None = Field(default=None, ge=1)

    @property
    def attribute_chain(self) -> tuple[str, ...]:
        return (self.source, *self.fallbacks)


class AccountSource(_Frozen):
    """Where the account id comes from: a fixed value or an attribute."""

    attribute: str | None = "accountId"
    value: int | None = None

    @model_validator(mode="after")
    def _has_source(self) -> AccountSource:
        if self.value is None and not self.attribute:
            raise ValueError("account needs an attribute or a value")
        return self


# === SYNTHESIS ===


class SynthesisRule(_Frozen):
    """Derives one entity type from matching telemetry events."""

    name: str = Field(min_length=1)
    provider: str = "default"
    event_types: tuple[str, ...] = ()
    domain: str
    type: str
    identifier: IdentifierExpr
    name_expr: IdentifierExpr | None = None
    account: AccountSource = AccountSource()
    conditions: tuple[Condition, ...] = ()
    tags: tuple[TagMapping, ...] = ()
    expiration_s: int | None = Field(default=None, ge=1)
    priority: int = 100
    order: int = 0

    @property
    def entity_type_key(self) -> tuple[str, str]:
        return (self.domain, self.type)

    def applies_to(self, event_type: str | None) -> bool:
        return not self.event_types or event_type in self.event_types


# === RELATIONSHIPS ===


class BuildGuid(_Frozen):
    """Construct the endpoint GUID from event fragments."""

    kind: Literal["build"] = "build"
    account: AccountSource = AccountSource()
    domain: str
    type: str
    identifier: IdentifierExpr


class ExtractGuid(_Frozen):
    """Read an endpoint GUID already present on the event."""

    kind: Literal["extract"] = "extract"
    attribute: str = Field(min_length=1)


class LookupField(_Frozen):
    field: str = Field(min_length=1)
    attribute: str = Field(min_length=1)


class LookupGuid(_Frozen):
    """Search the store for exactly one entity matching event attributes."""

    kind: Literal["lookup"] = "lookup"
    domain: str
    type: str
    fields: tuple[LookupField, ...] = Field(min_length=1)


Endpoint = Annotated[
    Union[BuildGuid, ExtractGuid, LookupGuid],
    Field(discriminator="kind"),
]


class RelationshipRule(_Frozen):
    """Emits a typed, TTL-bound edge between two resolved endpoints."""

    name: str = Field(min_length=1)
    provider: str = "default"
    type: str
    origins: tuple[str, ...] = ()
    conditions: tuple[Condition, ...] = ()
    source: Endpoint
    target: Endpoint
    ttl_s: int | None = Field(default=None, ge=1)
    priority: int = 100
    order: int = 0

    def applies_to(self, event_type: str | None) -> bool:
        return not self.origins or event_type in self.origins


# === RULE SET ===


class RuleSet(_Frozen):
    """Immutable snapshot of all loaded rules.

    Rules are kept sorted by (priority, order). Per-event-type candidate
    lists are precomputed; wildcard rules (no event types) appear in every
    list at their sorted position.
    """

    version: str
    loaded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sources: tuple[str, ...] = ()
    providers: tuple[str, ...] = ()
    synthesis: tuple[SynthesisRule, ...] = ()
    relationships: tuple[RelationshipRule, ...] = ()

    _synthesis_index: dict[str, tuple[SynthesisRule, ...]] = PrivateAttr(default_factory=dict)
    _synthesis_wildcard: tuple[SynthesisRule, ...] = PrivateAttr(default=())
    _relationship_index: dict[str, tuple[RelationshipRule, ...]] = PrivateAttr(default_factory=dict)
    _relationship_wildcard: tuple[RelationshipRule, ...] = PrivateAttr(default=())

    def model_post_init(self, __context: object) -> None:
        synthesis = sorted(self.synthesis, key=lambda r: (r.priority, r.order))
        relationships = sorted(self.relationships, key=lambda r: (r.priority, r.order))

        event_types = {t for r in synthesis for t in r.event_types}
        self._synthesis_index = {
            t: tuple(r for r in synthesis if r.applies_to(t)) for t in event_types
        }
        self._synthesis_wildcard = tuple(r for r in synthesis if not r.event_types)

        origins = {t for r in relationships for t in r.origins}
        self._relationship_index = {
            t: tuple(r for r in relationships if r.applies_to(t)) for t in origins
        }
        self._relationship_wildcard = tuple(r for r in relationships if not r.origins)

    @classmethod
    def empty(cls) -> RuleSet:
        return cls(version="empty")

    def synthesis_rules_for(self, event_type: str | None) -> tuple[SynthesisRule, ...]:
        """Candidate synthesis rules for an event type, in priority order."""
        if event_type is None:
            return self._synthesis_wildcard
        return self._synthesis_index.get(event_type, self._synthesis_wildcard)

    def relationship_rules_for(
        self, event_type: str | None
    ) -> tuple[RelationshipRule, ...]:
        """Candidate relationship rules for an event type, in priority order."""
        if event_type is None:
            return self._relationship_wildcard
        return self._relationship_index.get(event_type, self._relationship_wildcard)

    @property
    def rule_count(self) -> int:
        return len(self.synthesis) + len(self.relationships)
