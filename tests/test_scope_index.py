"""Tests for the scope index builder."""

from __future__ import annotations

import pytest

from tokensmith.ai.scope_index import ROOT_KEY, build_scope_index, build_shape_hints, strip_root


class TestBuildScopeIndex:
    def test_entries_follow_document_order(self, sample_design: dict) -> None:
        index = build_scope_index(sample_design)

        assert index.paths == (
            "designV2.tokens.colors",
            "designV2.tokens.typography.heading",
            "designV2.tokens.typography.body",
            "designV2.components.button.variants.primary",
            "designV2.components.button.variants.secondary",
            "designV2.sections.hero.layout",
            "designV2.sections.cards.layout",
        )
        assert [entry.category for entry in index.entries] == [
            "color",
            "typography",
            "typography",
            "component",
            "component",
            "layout",
            "layout",
        ]
        assert index.truncated is False

    def test_aliases_point_at_indexed_subtrees(self, sample_design: dict) -> None:
        index = build_scope_index(sample_design)

        assert index.aliases["primary button"] == ("designV2.components.button.variants.primary",)
        assert index.aliases["heading color"] == ("designV2.tokens.typography.heading",)
        assert index.aliases["body text"] == ("designV2.tokens.typography.body",)
        assert index.aliases["hero background"] == ("designV2.sections.hero.layout.inner.background",)
        assert index.aliases["cards section"] == ("designV2.sections.cards.layout",)
        assert "designV2.tokens.colors" in index.aliases["background"]
        for paths in index.aliases.values():
            assert all(index.covers(path) for path in paths)

    def test_missing_groups_are_skipped(self) -> None:
        index = build_scope_index({"tokens": {"colors": {}}, "sections": {"faq": {"layout": {}}}})
        assert index.paths == ("designV2.sections.faq.layout",)

    def test_non_mapping_document_yields_empty_index(self) -> None:
        index = build_scope_index(None)
        assert len(index) == 0
        assert index.aliases["button"] == ()

    def test_truncates_at_limit(self, sample_design: dict) -> None:
        index = build_scope_index(sample_design, max_entries=3)

        assert len(index) == 3
        assert index.truncated is True
        assert index.aliases["button"] == ()

    def test_rejects_non_positive_limit(self, sample_design: dict) -> None:
        with pytest.raises(ValueError):
            build_scope_index(sample_design, max_entries=0)

    def test_is_a_pure_projection(self, sample_design: dict) -> None:
        assert build_scope_index(sample_design) == build_scope_index(sample_design)

    def test_to_dict_shape(self, sample_design: dict) -> None:
        payload = build_scope_index(sample_design).to_dict()

        assert payload["version"] == 2
        assert payload["paths"][0] == {"id": "tokens.colors", "path": "designV2.tokens.colors", "category": "color"}
        assert "button_variants" in payload["relationships"]


class TestScopeIndexQueries:
    def test_covers_nested_paths_only(self, sample_design: dict) -> None:
        index = build_scope_index(sample_design)

        assert index.covers("designV2.tokens.colors.primary")
        assert index.covers("designV2.sections.hero.layout")
        assert not index.covers("designV2.sections.hero")
        assert not index.covers("designV2.tokens.colorsExtra")
        assert not index.covers("")

    def test_find_by_id(self, sample_design: dict) -> None:
        index = build_scope_index(sample_design)
        entry = index.find("components.button.variants.primary")
        assert entry is not None and entry.path.startswith(ROOT_KEY)
        assert index.find("components.card") is None


def test_shape_hints_list_child_keys(sample_design: dict) -> None:
    index = build_scope_index(sample_design)
    hints = build_shape_hints(sample_design, index)

    assert hints["designV2.components.button.variants.primary"] == ["backgroundColor", "textColor", "padding"]
    assert hints["designV2.sections.hero.layout"] == ["padding", "inner"]


def test_strip_root() -> None:
    assert strip_root("designV2.tokens.colors") == "tokens.colors"
    assert strip_root("tokens.colors") == "tokens.colors"
