# src/rules/loader.py — v2
"""Rule document loader — YAML/JSON files into a validated RuleSet.

Document shape (one provider per file)::

    provider: aws-msk
    version: "3"
    fragments:
      clusterKey:
        - attribute: accountId
        - value: ":"
        - attribute: clusterName
    synthesis:
      - name: msk-cluster
        eventTypes: [AwsMskClusterSample]
        domain: INFRA
        type: MESSAGE_QUEUE_CLUSTER
        identifier: {fragments: [{ref: clusterKey}]}
        conditions:
          - attribute: provider.clusterName
            present: true
        tags:
          provider.clusterName:
            entityTagName: kafka.cluster.name
            fallbacks: [clusterName]
        entityExpirationTime: 8d
    relationships:
      - name: msk-cluster-contains-broker
        type: CONTAINS
        origins: [AwsMskBrokerSample]
        ttl: 24h
        source:
          buildGuid: {...}
        target:
          extractGuid: {attribute: entityGuid}

Every problem is reported as InvalidRuleDefinition at load time; nothing
malformed reaches the engines.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

import networkx as nx
import yaml
from pydantic import ValidationError

from entitysynth.core.errors import InvalidRuleDefinition
from entitysynth.core.values import parse_duration
from entitysynth.rules.models import RelationshipRule, RuleSet, SynthesisRule
from entitysynth.rules.taxonomy import find_entity_type, find_relationship_type

logger = logging.getLogger(__name__)

BUILTIN_RULES_DIR = Path(__file__).parent / "definitions"

_RULE_SUFFIXES = (".yaml", ".yml", ".json")

# camelCase spellings accepted in rule documents -> model field names.
_KEY_ALIASES = {
    "eventTypes": "event_types",
    "eventType": "event_types",
    "oneOf": "one_of",
    "anyOf": "one_of",
    "entityTagName": "target",
    "nameExpression": "name_expr",
    "nameExpr": "name_expr",
}

_ENDPOINT_KINDS = {
    "buildGuid": "build",
    "build": "build",
    "extractGuid": "extract",
    "extract": "extract",
    "lookupGuid": "lookup",
    "lookup": "lookup",
}


# --- Public API ---


def discover_rule_files(paths: Iterable[Path | str]) -> list[Path]:
    """Expand files and directories into a sorted list of rule files."""
    files: list[Path] = []
    for raw in paths:
        path = Path(raw).expanduser()
        if path.is_dir():
            files.extend(
                sorted(p for p in path.rglob("*") if p.suffix.lower() in _RULE_SUFFIXES)
            )
        elif path.is_file():
            files.append(path)
        else:
            raise InvalidRuleDefinition(str(path), "path does not exist")
    return files


def load_rule_set(
    paths: Sequence[Path | str],
    include_builtin: bool = False,
    version: str | None = None,
) -> RuleSet:
    """Load and validate rule files into an immutable RuleSet.

    Args:
        paths: Rule files or directories (searched recursively).
        include_builtin: Prepend the packaged Kafka rule definitions.
        version: Explicit rule-set version; defaults to a content hash.

    Raises:
        InvalidRuleDefinition: On any parse or validation problem.
    """
    all_paths: list[Path | str] = [BUILTIN_RULES_DIR] if include_builtin else []
    all_paths.extend(paths)
    documents = [(str(p), _read_document(p)) for p in discover_rule_files(all_paths)]
    return build_rule_set(documents, version=version)


def build_rule_set(
    documents: Sequence[tuple[str, Any]],
    version: str | None = None,
) -> RuleSet:
    """Validate already-parsed rule documents into a RuleSet.

    Args:
        documents: (source name, parsed document) pairs, in priority order.
        version: Explicit rule-set version; defaults to a content hash.
    """
    synthesis: list[SynthesisRule] = []
    relationships: list[RelationshipRule] = []
    providers: list[str] = []
    order = 0

    for source, doc in documents:
        if doc is None:
            logger.debug("Skipping empty rule document %s", source)
            continue
        if not isinstance(doc, dict):
            raise InvalidRuleDefinition(source, "document must be a mapping")
        unknown = set(doc) - {"provider", "version", "fragments", "synthesis", "relationships"}
        if unknown:
            raise InvalidRuleDefinition(source, f"unknown top-level keys {sorted(unknown)}")

        provider = str(doc.get("provider") or "default")
        if provider not in providers:
            providers.append(provider)
        fragments = _resolve_fragments(source, doc.get("fragments") or {})

        for raw in _as_list(source, doc.get("synthesis"), "synthesis"):
            synthesis.append(_build_synthesis_rule(source, raw, provider, fragments, order))
            order += 1
        for raw in _as_list(source, doc.get("relationships"), "relationships"):
            relationships.append(
                _build_relationship_rule(source, raw, provider, fragments, order)
            )
            order += 1

    _check_unique(synthesis, "synthesis")
    _check_unique(relationships, "relationship")

    rule_set = RuleSet(
        version=version or rule_set_version(documents),
        sources=tuple(source for source, _ in documents),
        providers=tuple(providers),
        synthesis=tuple(synthesis),
        relationships=tuple(relationships),
    )
    logger.info(
        "Rule set %s built: %d synthesis, %d relationship rules from %d documents",
        rule_set.version, len(synthesis), len(relationships), len(documents),
    )
    return rule_set


def rule_set_version(documents: Sequence[tuple[str, Any]]) -> str:
    """Content hash of the parsed documents (order-sensitive)."""
    digest = hashlib.sha256()
    for _, doc in documents:
        digest.update(json.dumps(doc, sort_keys=True, default=str).encode("utf-8"))
    return digest.hexdigest()[:16]


# --- Document parsing ---


def _read_document(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise InvalidRuleDefinition(str(path), f"cannot read file: {exc}") from exc
    try:
        if path.suffix.lower() == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise InvalidRuleDefinition(str(path), f"parse error: {exc}") from exc


def _as_list(source: str, value: Any, section: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise InvalidRuleDefinition(source, f"'{section}' must be a list")
    return value


def _check_unique(rules: Sequence[SynthesisRule | RelationshipRule], label: str) -> None:
    seen: set[str] = set()
    for rule in rules:
        if rule.name in seen:
            raise InvalidRuleDefinition(rule.name, f"duplicate {label} rule name")
        seen.add(rule.name)


# --- Fragments ---


def _resolve_fragments(source: str, raw: Any) -> dict[str, list[dict[str, Any]]]:
    """Validate named fragment lists and expand nested references.

    References form a directed graph name -> referenced name; a cycle makes
    the document invalid.
    """
    if not isinstance(raw, dict):
        raise InvalidRuleDefinition(source, "'fragments' must be a mapping")

    named: dict[str, list[dict[str, Any]]] = {}
    for name, items in raw.items():
        if not isinstance(items, list) or not items:
            raise InvalidRuleDefinition(source, f"fragment {name!r} must be a non-empty list")
        named[str(name)] = [_normalize_fragment(source, item) for item in items]

    graph = nx.DiGraph()
    graph.add_nodes_from(named)
    for name, items in named.items():
        for item in items:
            if item["kind"] == "ref":
                if item["ref"] not in named:
                    raise InvalidRuleDefinition(
                        source, f"fragment {name!r} references unknown fragment {item['ref']!r}"
                    )
                graph.add_edge(name, item["ref"])

    try:
        cycle = nx.find_cycle(graph)
    except nx.NetworkXNoCycle:
        cycle = None
    if cycle:
        path = " -> ".join([u for u, _ in cycle] + [cycle[0][0]])
        raise InvalidRuleDefinition(source, f"cyclic fragment reference: {path}")

    # Expand leaves first so every reference target is already flat.
    expanded: dict[str, list[dict[str, Any]]] = {}
    for name in reversed(list(nx.topological_sort(graph))):
        flat: list[dict[str, Any]] = []
        for item in named[name]:
            if item["kind"] == "ref":
                flat.extend(expanded[item["ref"]])
            else:
                flat.append(item)
        expanded[name] = flat
    return expanded


def _normalize_fragment(source: str, item: Any) -> dict[str, Any]:
    if isinstance(item, str):
        return {"kind": "literal", "value": item}
    if not isinstance(item, dict):
        raise InvalidRuleDefinition(source, f"invalid fragment {item!r}")
    if "ref" in item or "fragment" in item:
        return {"kind": "ref", "ref": str(item.get("ref", item.get("fragment")))}
    if "attribute" in item:
        return {
            "kind": "attribute",
            "attribute": item["attribute"],
            "required": bool(item.get("required", True)),
        }
    if "value" in item:
        return {"kind": "literal", "value": str(item["value"])}
    raise InvalidRuleDefinition(source, f"fragment needs attribute, value or ref: {item!r}")


def _expand_refs(
    source: str,
    items: list[dict[str, Any]],
    fragments: dict[str, list[dict[str, Any]]],
) -> list[dict[str, Any]]:
    flat: list[dict[str, Any]] = []
    for item in items:
        if item["kind"] == "ref":
            if item["ref"] not in fragments:
                raise InvalidRuleDefinition(source, f"unknown fragment reference {item['ref']!r}")
            flat.extend(fragments[item["ref"]])
        else:
            flat.append(item)
    return flat


# --- Expressions, conditions, tags ---


def _normalize_expr(
    source: str,
    raw: Any,
    fragments: dict[str, list[dict[str, Any]]],
) -> dict[str, Any]:
    """Turn shorthand identifier syntax into a tagged expression dict.

    ``"clusterName"`` is an attribute reference; a string containing
    ``{{`` is a template; a list is a fragment list.
    """
    if isinstance(raw, str):
        if "{{" in raw or "}}" in raw:
            return {"kind": "template", "template": raw}
        return {"kind": "attribute", "attribute": raw}
    if isinstance(raw, list):
        raw = {"fragments": raw}
    if not isinstance(raw, dict):
        raise InvalidRuleDefinition(source, f"invalid identifier expression {raw!r}")
    if "fragments" in raw:
        items = raw["fragments"]
        if not isinstance(items, list):
            raise InvalidRuleDefinition(source, "'fragments' must be a list")
        normalized = [_normalize_fragment(source, item) for item in items]
        return {"kind": "fragments", "fragments": _expand_refs(source, normalized, fragments)}
    if "template" in raw:
        return {"kind": "template", "template": raw["template"]}
    if "attribute" in raw:
        return {"kind": "attribute", "attribute": raw["attribute"]}
    raise InvalidRuleDefinition(source, f"identifier needs attribute, template or fragments: {raw!r}")


def _normalize_keys(raw: dict[str, Any]) -> dict[str, Any]:
    return {_KEY_ALIASES.get(k, k): v for k, v in raw.items()}


def _normalize_conditions(source: str, raw: Any) -> list[dict[str, Any]]:
    conditions: list[dict[str, Any]] = []
    for item in _as_list(source, raw, "conditions"):
        if not isinstance(item, dict):
            raise InvalidRuleDefinition(source, f"invalid condition {item!r}")
        cond = _normalize_keys(item)
        if "not" in cond:
            cond["negate"] = bool(cond.pop("not"))
        conditions.append(cond)
    return conditions


def _normalize_tags(source: str, raw: Any) -> list[dict[str, Any]]:
    """Accept mapping form ``{source: {entityTagName, fallbacks, ttl}}`` or a list."""
    if raw is None:
        return []
    if isinstance(raw, dict):
        items = []
        for attr, spec in raw.items():
            if isinstance(spec, str):
                spec = {"target": spec}
            elif spec is None:
                spec = {}
            elif isinstance(spec, dict):
                spec = dict(spec)
            else:
                raise InvalidRuleDefinition(source, f"invalid mapping for tag {attr!r}: {spec!r}")
            spec.setdefault("source", attr)
            items.append(spec)
    elif isinstance(raw, list):
        items = []
        for item in raw:
            if isinstance(item, dict):
                items.append(dict(item))
            elif isinstance(item, str):
                items.append({"source": item})
            else:
                raise InvalidRuleDefinition(source, f"invalid tag entry {item!r}")
    else:
        raise InvalidRuleDefinition(source, "'tags' must be a mapping or a list")

    tags: list[dict[str, Any]] = []
    for item in items:
        tag = _normalize_keys(item)
        tag.setdefault("target", tag.get("source"))
        if "ttl" in tag:
            tag["ttl_s"] = _duration(source, tag.pop("ttl"))
        fallbacks = tag.get("fallbacks")
        if isinstance(fallbacks, str):
            tag["fallbacks"] = [fallbacks]
        tags.append(tag)
    return tags


def _normalize_account(source: str, raw: Any) -> dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, int):
        return {"value": raw, "attribute": None}
    if isinstance(raw, str):
        return {"attribute": raw}
    if not isinstance(raw, dict):
        raise InvalidRuleDefinition(source, f"invalid account source {raw!r}")
    if "value" in raw:
        return {"value": raw["value"], "attribute": None}
    return dict(raw)


def _duration(source: str, raw: Any) -> int:
    try:
        seconds = parse_duration(raw)
    except ValueError as exc:
        raise InvalidRuleDefinition(source, str(exc)) from exc
    if seconds <= 0:
        raise InvalidRuleDefinition(source, f"duration must be positive: {raw!r}")
    return seconds


def _check_entity_type(source: str, domain: Any, entity_type: Any) -> None:
    if find_entity_type(str(domain), str(entity_type)) is None:
        raise InvalidRuleDefinition(source, f"unknown entity type {domain}/{entity_type}")


# --- Rules ---


def _build_synthesis_rule(
    source: str,
    raw: Any,
    provider: str,
    fragments: dict[str, list[dict[str, Any]]],
    order: int,
) -> SynthesisRule:
    if not isinstance(raw, dict):
        raise InvalidRuleDefinition(source, f"synthesis rule must be a mapping: {raw!r}")
    data = _normalize_keys(raw)
    label = f"{source}:{data.get('name', '<unnamed>')}"

    if "identifier" not in data:
        raise InvalidRuleDefinition(label, "missing identifier")
    _check_entity_type(label, data.get("domain"), data.get("type"))

    data["identifier"] = _normalize_expr(label, data["identifier"], fragments)
    if data.get("name_expr") is not None:
        data["name_expr"] = _normalize_expr(label, data["name_expr"], fragments)
    if isinstance(data.get("event_types"), str):
        data["event_types"] = [data["event_types"]]
    data["conditions"] = _normalize_conditions(label, data.get("conditions"))
    data["tags"] = _normalize_tags(label, data.get("tags"))
    if "account" in data:
        data["account"] = _normalize_account(source, data["account"])
    for key in ("entityExpirationTime", "expiration"):
        if key in data:
            data["expiration_s"] = _duration(label, data.pop(key))
    data.setdefault("provider", provider)
    data["order"] = order

    try:
        return SynthesisRule(**data)
    except ValidationError as exc:
        raise InvalidRuleDefinition(label, _summarize(exc)) from exc


def _build_relationship_rule(
    source: str,
    raw: Any,
    provider: str,
    fragments: dict[str, list[dict[str, Any]]],
    order: int,
) -> RelationshipRule:
    if not isinstance(raw, dict):
        raise InvalidRuleDefinition(source, f"relationship rule must be a mapping: {raw!r}")
    data = _normalize_keys(raw)
    label = f"{source}:{data.get('name', '<unnamed>')}"

    if find_relationship_type(str(data.get("type"))) is None:
        raise InvalidRuleDefinition(label, f"unknown relationship type {data.get('type')!r}")
    if isinstance(data.get("origins"), str):
        data["origins"] = [data["origins"]]
    data["conditions"] = _normalize_conditions(label, data.get("conditions"))
    for side in ("source", "target"):
        if side not in data:
            raise InvalidRuleDefinition(label, f"missing {side} endpoint")
        data[side] = _normalize_endpoint(label, data[side], fragments)
    if "ttl" in data:
        data["ttl_s"] = _duration(label, data.pop("ttl"))
    data.setdefault("provider", provider)
    data["order"] = order

    try:
        return RelationshipRule(**data)
    except ValidationError as exc:
        raise InvalidRuleDefinition(label, _summarize(exc)) from exc


def _normalize_endpoint(
    source: str,
    raw: Any,
    fragments: dict[str, list[dict[str, Any]]],
) -> dict[str, Any]:
    """``{buildGuid: {...}}`` / ``{extractGuid: {...}}`` / ``{lookupGuid: {...}}``."""
    if not isinstance(raw, dict) or len(raw) != 1:
        raise InvalidRuleDefinition(
            source, "endpoint must have exactly one of buildGuid, extractGuid, lookupGuid"
        )
    (key, spec), = raw.items()
    kind = _ENDPOINT_KINDS.get(key)
    if kind is None:
        raise InvalidRuleDefinition(source, f"unknown endpoint strategy {key!r}")
    if isinstance(spec, str) and kind == "extract":
        spec = {"attribute": spec}
    if not isinstance(spec, dict):
        raise InvalidRuleDefinition(source, f"invalid {key} endpoint {spec!r}")

    endpoint = dict(spec)
    endpoint["kind"] = kind
    if kind == "build":
        _check_entity_type(source, endpoint.get("domain"), endpoint.get("type"))
        if "identifier" not in endpoint:
            raise InvalidRuleDefinition(source, "buildGuid endpoint needs an identifier")
        endpoint["identifier"] = _normalize_expr(source, endpoint["identifier"], fragments)
        if "account" in endpoint:
            endpoint["account"] = _normalize_account(source, endpoint["account"])
    elif kind == "lookup":
        _check_entity_type(source, endpoint.get("domain"), endpoint.get("type"))
        fields = endpoint.get("fields")
        if isinstance(fields, dict):
            endpoint["fields"] = [{"field": f, "attribute": a} for f, a in fields.items()]
    return endpoint


def _summarize(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)
