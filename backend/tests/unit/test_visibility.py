"""
Property/visibility control tests
"""

import asyncio

import pytest

from conftest import FakeDocument, node
from figma_anchors import AnchorResolver
from figma_visibility import (
    VisibilityController,
    build_visibility_targets,
    extract_property_keys,
    match_property_key,
    normalize_prop_token,
)

KEYS = ["ShowimgSlot2#194:57", "ShowimgSlot3#194:58", "Showslot:TITLE#194:60", "showSourceLine#194:61"]


class TestMatchPropertyKey:

    def test_normalize_prop_token(self):
        assert normalize_prop_token("Show slot:TITLE#12:3") == "showslottitle123"
        assert normalize_prop_token(None) == ""

    def test_exact_base_match(self):
        assert match_property_key("ShowimgSlot2", KEYS) == "ShowimgSlot2#194:57"
        assert match_property_key("Showslot:TITLE", KEYS) == "Showslot:TITLE#194:60"

    def test_exact_match_preferred_over_containment(self):
        keys = ["ShowimgSlot2Extra#1:1", "ShowimgSlot2#1:2"]
        assert match_property_key("ShowimgSlot2", keys) == "ShowimgSlot2#1:2"

    def test_containment_fallback(self):
        assert match_property_key("ShowSource", KEYS) == "showSourceLine#194:61"

    def test_no_match(self):
        assert match_property_key("ShowimgSlot4", KEYS) is None
        assert match_property_key("", KEYS) is None
        assert match_property_key("ShowimgSlot2", []) is None

    def test_extract_property_keys(self):
        assert extract_property_keys({"propertyKeys": ["a#1"], "properties": {"b#2": {}}}) == ["a#1"]
        assert extract_property_keys({"properties": {"b#2": {}}}) == ["b#2"]
        assert extract_property_keys({"componentProperties": {"c#3": {}}}) == ["c#3"]
        assert extract_property_keys(None) == []


class TestBuildVisibilityTargets:

    @pytest.mark.parametrize("count, shown", [
        (0, []),
        (1, []),
        (2, ["imgSlot2"]),
        (4, ["imgSlot2", "imgSlot3", "imgSlot4"]),
    ])
    def test_image_slots(self, count, shown):
        targets = build_visibility_targets(False, False, count)
        assert [t.name for t in targets if t.should_show and t.name.startswith("img")] == shown

    def test_title_and_source(self):
        targets = {t.name: t for t in build_visibility_targets(True, False, 1)}
        assert targets["slot:TITLE"].should_show
        assert not targets["slot:SOURCE"].should_show
        assert "sourceText" in targets["slot:SOURCE"].fallback_names
        assert "来源" in targets["slot:SOURCE"].fallback_names


def _card_document() -> FakeDocument:
    page = node("0:1", "Page", "PAGE", [
        node("3:1", "Card", "INSTANCE", [
            node("3:2", "slot:TITLE", "FRAME", [node("3:3", "titleText", "TEXT")]),
            node("3:4", "slot:IMAGE_GRID", "FRAME", [
                node("3:5", "imgSlot1", "FRAME"),
                node("3:6", "imgSlot2", "FRAME"),
                node("3:7", "imgSlot3", "FRAME"),
                node("3:8", "imgSlot4", "FRAME"),
            ]),
            node("3:9", "sourceText", "TEXT"),
        ]),
    ])
    document = FakeDocument(page)
    document.property_keys["3:1"] = ["ShowimgSlot2#1:1", "ShowimgSlot3#1:2", "ShowimgSlot4#1:3",
                                     "Showslot:TITLE#1:4", "Showslot:SOURCE#1:5"]
    return document


def _apply(plugin, connect, **flags):
    async def scenario():
        session = await connect(plugin)
        controller = VisibilityController(session, AnchorResolver(session), settle_delay=0)
        outcome = await controller.apply_visibility("3:1", **flags)
        await session.close()
        return outcome
    return asyncio.run(scenario())


class TestVisibilityController:

    def test_single_bulk_property_update(self, plugin, connect):
        _card_document().install(plugin)
        outcome = _apply(plugin, connect, has_title=True, has_source=False, image_count=2)

        assert outcome.properties_applied
        assert plugin.calls_to("set_instance_properties") == [{
            "nodeId": "3:1",
            "properties": {
                "ShowimgSlot2#1:1": True,
                "ShowimgSlot3#1:2": False,
                "ShowimgSlot4#1:3": False,
                "Showslot:SOURCE#1:5": False,
                "Showslot:TITLE#1:4": True,
            },
        }]
        assert plugin.calls_to("hide_nodes_by_name") == []
        assert len(plugin.calls_to("flush_layout")) == 1

    def test_property_failure_hides_extra_image_slots_by_name(self, plugin, connect):
        _card_document().install(plugin)
        plugin.fail("set_instance_properties", code="property_update_failed")

        outcome = _apply(plugin, connect, has_title=True, has_source=True, image_count=1)

        hide_calls = plugin.calls_to("hide_nodes_by_name")
        assert len(hide_calls) == 1
        assert hide_calls[0] == {"rootId": "3:1", "names": ["imgSlot2", "imgSlot3", "imgSlot4"]}
        assert outcome.hidden_by_name == ["imgSlot2", "imgSlot3", "imgSlot4"]
        assert not outcome.properties_applied

    def test_soft_failure_counts_as_failure(self, plugin, connect):
        _card_document().install(plugin)
        plugin.on("set_instance_properties", lambda params: {"success": False, "message": "locked"})

        outcome = _apply(plugin, connect, has_title=False, has_source=True, image_count=4)
        assert plugin.calls_to("hide_nodes_by_name")[0]["names"] == ["slot:TITLE"]
        assert not outcome.properties_applied

    def test_missing_property_api_falls_back(self, plugin, connect):
        document = _card_document()
        document.install(plugin)
        plugin.fail("get_component_property_references", code="unknown_command")

        _apply(plugin, connect, has_title=True, has_source=False, image_count=3)

        assert plugin.calls_to("set_instance_properties") == []
        assert plugin.calls_to("hide_nodes_by_name")[0]["names"] == ["imgSlot4", "slot:SOURCE"]

    def test_per_node_hide_when_bulk_hide_fails(self, plugin, connect):
        document = _card_document()
        document.install(plugin)
        plugin.fail("set_instance_properties")
        plugin.fail("hide_nodes_by_name")

        outcome = _apply(plugin, connect, has_title=True, has_source=False, image_count=3)

        hidden_ids = [params["nodeId"] for params in plugin.calls_to("set_node_visible")]
        # imgSlot4 by its own name; the source slot through its "sourceText" fallback
        assert hidden_ids == ["3:8", "3:9"]
        assert outcome.hidden_by_name == ["imgSlot4", "slot:SOURCE"]
        assert document.find("3:8")["visible"] is False

    def test_last_resort_failures_are_tolerated(self, plugin, connect):
        _card_document().install(plugin)
        plugin.fail("set_instance_properties")
        plugin.fail("hide_nodes_by_name")
        plugin.fail("set_node_visible")
        plugin.fail("flush_layout")

        outcome = _apply(plugin, connect, has_title=True, has_source=True, image_count=3)
        assert outcome.hidden_by_name == []
        assert len(plugin.calls_to("set_node_visible")) == 1
