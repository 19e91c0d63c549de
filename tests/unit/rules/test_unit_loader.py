# tests/unit/rules/test_unit_loader.py — v2
"""Tests for rules/loader.py — document normalization and validation."""

from __future__ import annotations

import json

import pytest

from entitysynth.core.errors import InvalidRuleDefinition
from entitysynth.rules.loader import (
    BUILTIN_RULES_DIR,
    build_rule_set,
    discover_rule_files,
    load_rule_set,
    rule_set_version,
)
from entitysynth.rules.models import (
    AttributeExpr,
    BuildGuid,
    ExtractGuid,
    FragmentsExpr,
    LiteralFragment,
    LookupGuid,
    TemplateExpr,
)


def _doc(**synth_overrides):
    rule = {
        "name": "cluster",
        "eventTypes": ["KafkaClusterSample"],
        "domain": "INFRA",
        "type": "MESSAGE_QUEUE_CLUSTER",
        "identifier": "clusterName",
    }
    rule.update(synth_overrides)
    return {"provider": "kafka", "synthesis": [rule]}


def _build(*docs):
    return build_rule_set([(f"doc{i}", d) for i, d in enumerate(docs)])


class TestExpressions:
    def test_plain_string_is_attribute(self):
        rule = _build(_doc()).synthesis[0]
        assert rule.identifier == AttributeExpr(attribute="clusterName")

    def test_braces_make_a_template(self):
        rule = _build(_doc(identifier="{{accountId}}:{{clusterName}}")).synthesis[0]
        assert isinstance(rule.identifier, TemplateExpr)

    def test_list_is_fragments(self):
        rule = _build(_doc(identifier=[{"attribute": "a"}, ":", {"attribute": "b"}])).synthesis[0]
        assert isinstance(rule.identifier, FragmentsExpr)
        assert rule.identifier.fragments[1] == LiteralFragment(value=":")

    def test_fragment_refs_expanded(self):
        doc = _doc(identifier={"fragments": [{"ref": "outer"}]})
        doc["fragments"] = {
            "inner": [{"attribute": "b"}],
            "outer": [{"attribute": "a"}, "/", {"ref": "inner"}],
        }
        rule = _build(doc).synthesis[0]
        kinds = [f.kind for f in rule.identifier.fragments]
        assert kinds == ["attribute", "literal", "attribute"]

    def test_cyclic_fragments_rejected(self):
        doc = _doc()
        doc["fragments"] = {"a": [{"ref": "b"}], "b": [{"ref": "a"}]}
        with pytest.raises(InvalidRuleDefinition, match="cyclic"):
            _build(doc)

    def test_unknown_fragment_ref_rejected(self):
        doc = _doc(identifier=[{"ref": "nope"}])
        with pytest.raises(InvalidRuleDefinition, match="unknown fragment"):
            _build(doc)

    def test_malformed_template_rejected(self):
        with pytest.raises(InvalidRuleDefinition, match="unbalanced"):
            _build(_doc(identifier="{{a}}:{{b"))


class TestRuleFields:
    def test_tags_mapping_and_shorthand(self):
        rule = _build(_doc(tags={
            "clusterName": "kafka.cluster.name",
            "provider.clusterName": {"entityTagName": "k", "fallbacks": "clusterName", "ttl": "1h"},
        })).synthesis[0]
        first, second = rule.tags
        assert (first.source, first.target) == ("clusterName", "kafka.cluster.name")
        assert second.fallbacks == ("clusterName",)
        assert second.ttl_s == 3600

    def test_tags_list_form(self):
        rule = _build(_doc(tags=["clusterName"])).synthesis[0]
        assert rule.tags[0].target == "clusterName"

    def test_expiration_duration(self):
        rule = _build(_doc(entityExpirationTime="8d")).synthesis[0]
        assert rule.expiration_s == 8 * 86400

    def test_conditions_aliases(self):
        rule = _build(_doc(conditions=[
            {"attribute": "env", "oneOf": ["prod", "stage"]},
            {"attribute": "test", "present": True, "not": True},
        ])).synthesis[0]
        assert rule.conditions[0].one_of == ("prod", "stage")
        assert rule.conditions[1].negate is True

    def test_account_fixed_value(self):
        rule = _build(_doc(account=7)).synthesis[0]
        assert rule.account.value == 7
        assert rule.account.attribute is None

    def test_provider_and_order_assigned(self):
        rs = _build(_doc(), _doc(name="second"))
        assert [r.order for r in rs.synthesis] == [0, 1]
        assert rs.providers == ("kafka",)


class TestRejections:
    def test_unknown_entity_type(self):
        with pytest.raises(InvalidRuleDefinition, match="unknown entity type"):
            _build(_doc(type="NOT_A_TYPE"))

    def test_missing_identifier(self):
        doc = _doc()
        del doc["synthesis"][0]["identifier"]
        with pytest.raises(InvalidRuleDefinition, match="missing identifier"):
            _build(doc)

    def test_unknown_top_level_key(self):
        doc = _doc()
        doc["extras"] = {}
        with pytest.raises(InvalidRuleDefinition, match="unknown top-level"):
            _build(doc)

    def test_duplicate_names(self):
        with pytest.raises(InvalidRuleDefinition, match="duplicate"):
            _build(_doc(), _doc())

    def test_unknown_field_summarized(self):
        with pytest.raises(InvalidRuleDefinition, match="colour"):
            _build(_doc(colour="red"))

    def test_bad_duration(self):
        with pytest.raises(InvalidRuleDefinition, match="Invalid duration"):
            _build(_doc(entityExpirationTime="forever"))

    @pytest.mark.parametrize("tags", [{"h": 5}, {"h": ["a", "b"]}, [5], [["a"]]])
    def test_malformed_tag_mapping(self, tags):
        with pytest.raises(InvalidRuleDefinition, match="tag"):
            _build(_doc(tags=tags))

    @pytest.mark.parametrize("account", [["accountId"], 1.5])
    def test_malformed_account_source(self, account):
        with pytest.raises(InvalidRuleDefinition, match="account source"):
            _build(_doc(account=account))

    def test_document_not_mapping(self):
        with pytest.raises(InvalidRuleDefinition, match="mapping"):
            build_rule_set([("doc", ["a"])])


class TestRelationshipRules:
    def _rel_doc(self, **overrides):
        rel = {
            "name": "rel",
            "type": "CONTAINS",
            "origins": "KafkaBrokerSample",
            "ttl": "24h",
            "source": {"buildGuid": {"domain": "INFRA", "type": "MESSAGE_QUEUE_CLUSTER", "identifier": "clusterName"}},
            "target": {"extractGuid": "entity.guid"},
        }
        rel.update(overrides)
        return {"relationships": [rel]}

    def test_endpoint_kinds(self):
        rule = _build(self._rel_doc(target={
            "lookupGuid": {"domain": "INFRA", "type": "HOST", "fields": {"name": "hostname"}},
        })).relationships[0]
        assert isinstance(rule.source, BuildGuid)
        assert isinstance(rule.target, LookupGuid)
        assert rule.target.fields[0].field == "name"
        assert rule.origins == ("KafkaBrokerSample",)
        assert rule.ttl_s == 86400

    def test_extract_shorthand(self):
        rule = _build(self._rel_doc()).relationships[0]
        assert rule.target == ExtractGuid(attribute="entity.guid")

    def test_unknown_relationship_type(self):
        with pytest.raises(InvalidRuleDefinition, match="unknown relationship type"):
            _build(self._rel_doc(type="LIKES"))

    def test_unknown_endpoint_strategy(self):
        with pytest.raises(InvalidRuleDefinition, match="unknown endpoint strategy"):
            _build(self._rel_doc(target={"guessGuid": {}}))

    def test_lookup_needs_fields(self):
        with pytest.raises(InvalidRuleDefinition):
            _build(self._rel_doc(target={"lookupGuid": {"domain": "INFRA", "type": "HOST", "fields": []}}))


class TestFiles:
    def test_yaml_and_json_discovered(self, tmp_path):
        (tmp_path / "a.yaml").write_text(
            "provider: p\nsynthesis:\n  - name: r1\n    domain: INFRA\n"
            "    type: HOST\n    identifier: hostname\n"
        )
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.json").write_text(json.dumps(_doc(name="r2")))
        (tmp_path / "notes.txt").write_text("ignored")
        files = discover_rule_files([tmp_path])
        assert [f.name for f in files] == ["a.yaml", "b.json"]
        rs = load_rule_set([tmp_path])
        assert {r.name for r in rs.synthesis} == {"r1", "r2"}

    def test_missing_path(self, tmp_path):
        with pytest.raises(InvalidRuleDefinition, match="does not exist"):
            discover_rule_files([tmp_path / "nope.yaml"])

    def test_parse_error(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("synthesis: [unclosed\n")
        with pytest.raises(InvalidRuleDefinition, match="parse error"):
            load_rule_set([bad])

    def test_empty_document_skipped(self, tmp_path):
        (tmp_path / "empty.yaml").write_text("")
        assert load_rule_set([tmp_path]).rule_count == 0

    def test_builtin_definitions_load(self):
        assert BUILTIN_RULES_DIR.is_dir()
        rs = load_rule_set([], include_builtin=True)
        assert {"kafka", "aws-msk", "confluent-cloud"} <= set(rs.providers)
        assert rs.synthesis_rules_for("KafkaClusterSample")


class TestVersion:
    def test_content_hash_is_stable(self):
        docs = [("a", _doc())]
        assert rule_set_version(docs) == rule_set_version([("b", _doc())])
        assert len(rule_set_version(docs)) == 16

    def test_content_change_changes_version(self):
        assert rule_set_version([("a", _doc())]) != rule_set_version([("a", _doc(name="x"))])

    def test_explicit_version(self):
        assert build_rule_set([("a", _doc())], version="v9").version == "v9"
