"""
tests/test_catalog.py — Policy catalog shape and immutability.
"""

from __future__ import annotations

import configparser
import dataclasses

import pytest

from psgate.catalog import (
    DEFAULT_CATALOG,
    SAFE_PIPELINE_VERBS,
    PolicyCatalog,
    PolicyRule,
    RuleKind,
    load_catalog,
)


class TestDefaultCatalog:
    def test_has_both_rule_kinds(self):
        assert len(DEFAULT_CATALOG.list_allow_rules()) > 0
        assert len(DEFAULT_CATALOG.list_block_rules()) > 0

    def test_allow_rules_are_anchored(self):
        for rule in DEFAULT_CATALOG.list_allow_rules():
            assert rule.kind is RuleKind.ALLOW
            assert rule.anchored

    def test_block_rules_are_not_anchored(self):
        for rule in DEFAULT_CATALOG.list_block_rules():
            assert rule.kind is RuleKind.BLOCK
            assert not rule.anchored

    def test_block_categories_cover_dangerous_classes(self):
        categories = {r.category for r in DEFAULT_CATALOG.list_block_rules()}
        for expected in (
            "remote-content", "dynamic-code", "encoded-payload", "memory-loading",
            "hidden-window", "destructive-file", "nested-interpreter",
            "privilege-escalation", "system-power",
        ):
            assert expected in categories

    def test_dangerous_verbs_are_not_allowed(self):
        for verb in ("Invoke-WebRequest", "Add-Type", "Remove-Item", "Start-Process", "Install-Module"):
            assert not DEFAULT_CATALOG.covers(verb), verb

    def test_covers_is_case_insensitive_and_exact(self):
        assert DEFAULT_CATALOG.covers("get-service")
        assert DEFAULT_CATALOG.covers("Get-WsusServer")
        assert not DEFAULT_CATALOG.covers("Get-Services")
        assert not DEFAULT_CATALOG.covers("Get-Serv")

    def test_safe_pipeline_verbs_are_covered(self):
        assert DEFAULT_CATALOG.safe_pipeline_verbs == SAFE_PIPELINE_VERBS
        for verb in SAFE_PIPELINE_VERBS:
            assert DEFAULT_CATALOG.covers(verb)
            assert DEFAULT_CATALOG.is_safe_pipeline_verb(verb.upper())

    def test_catalog_is_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            DEFAULT_CATALOG.allow_rules = ()

    def test_rule_is_frozen(self):
        rule = DEFAULT_CATALOG.list_allow_rules()[0]
        with pytest.raises(dataclasses.FrozenInstanceError):
            rule.pattern = ".*"


class TestCatalogConstruction:
    def test_allow_rule_escapes_literal_names(self):
        rule = PolicyRule.allow("[xml]", "structured-data")
        assert rule.names("[XML]")
        assert not rule.names("x")
        assert not rule.names("[xml.Evil]")

    def test_namespace_rule_names_types_below_it(self):
        rule = PolicyRule.allow("[System.IO.Compression", "file-read")
        assert rule.names("[System.IO.Compression.ZipFile]")
        assert rule.names("[system.io.compression.zipfile]")
        assert rule.names("[System.IO.Compression]")
        assert not rule.names("[System.IO.CompressionEvil]")
        assert not rule.names("[System.IO]")

    def test_verb_rule_never_prefix_matches(self):
        assert not PolicyRule.allow("Get-Date", "output").names("Get-Date.exe")

    def test_value_types_covered_dangerous_types_not(self):
        for name in ("[math]", "[int]", "[string]", "[datetime]", "[PSCustomObject]"):
            assert DEFAULT_CATALOG.covers(name), name
        for name in ("[ScriptBlock]", "[powershell]", "[wmiclass]", "[AppDomain]", "[System.Environment]"):
            assert not DEFAULT_CATALOG.covers(name), name

    def test_block_rule_in_allow_list_rejected(self):
        with pytest.raises(ValueError):
            PolicyCatalog(
                allow_rules=(PolicyRule.block(r"\biex\b", "dynamic-code"),),
                block_rules=(),
            )

    def test_unanchored_allow_rule_rejected(self):
        with pytest.raises(ValueError):
            PolicyCatalog(
                allow_rules=(PolicyRule("Get-Service", RuleKind.ALLOW, False, "x"),),
                block_rules=(),
            )

    def test_with_allow_rules_returns_new_value(self):
        extra = PolicyRule.allow("Get-Foo", "site-local")
        widened = DEFAULT_CATALOG.with_allow_rules([extra])
        assert widened is not DEFAULT_CATALOG
        assert len(widened.list_allow_rules()) == len(DEFAULT_CATALOG.list_allow_rules()) + 1
        assert widened.list_block_rules() == DEFAULT_CATALOG.list_block_rules()
        assert not DEFAULT_CATALOG.covers("Get-Foo")
        assert widened.covers("Get-Foo")


class TestLoadCatalog:
    def test_no_config_returns_default(self):
        assert load_catalog() is DEFAULT_CATALOG

    def test_empty_extra_allow_returns_default(self):
        cfg = configparser.ConfigParser()
        cfg["policy"] = {"extra_allow": ""}
        assert load_catalog(cfg) is DEFAULT_CATALOG

    def test_extra_allow_adds_site_local_rules(self):
        cfg = configparser.ConfigParser()
        cfg["policy"] = {"extra_allow": "Get-Foo, Test-Bar"}
        catalog = load_catalog(cfg)
        added = catalog.list_allow_rules()[-2:]
        assert [r.category for r in added] == ["site-local", "site-local"]
        assert catalog.covers("Test-Bar")

    def test_extra_allow_rejects_non_verb_names(self):
        cfg = configparser.ConfigParser()
        cfg["policy"] = {"extra_allow": "rm -rf"}
        with pytest.raises(ValueError):
            load_catalog(cfg)
