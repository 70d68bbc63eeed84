"""
Orchestration and configuration tests
"""

import asyncio
import base64
import json
from pathlib import Path

import pytest

import main
from conftest import FakeDocument, node
from main import PosterRunError, PosterRunner, RunConfig, default_asset_dir, get_config, poster_key

FIGURE_BLOCK = {"type": "figure", "group_id": "g1", "group_seq": 0, "title": "T", "credit": "X",
                "image": {"asset_id": "a1"}}

ENV_KEYS = ("BRIDGE_URL", "FIGMA_CHANNEL", "FIGMA_COMMAND_TIMEOUT", "ASSET_BASE_URL", "ASSET_DIR", "OUTPUT_DIR",
            "EXPORT_ROOT", "AUTO_EXPORT", "MAPPING_PATH", "CONTENT_JSON_PATH")


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def _write_content(path: Path, *blocks) -> Path:
    path.write_text(json.dumps({"doc": {"title": "Weekly"}, "blocks": list(blocks)}), encoding="utf-8")
    return path


def _run(plugin, connect, config):
    async def factory():
        return await connect(plugin)

    runner = PosterRunner(config, session_factory=factory)
    return runner, asyncio.run(runner.run())


class TestPosterRunner:

    def test_single_figure_end_to_end(self, plugin, connect, poster_document, tmp_path):
        content = _write_content(tmp_path / "250915_weekly.json", FIGURE_BLOCK)
        png = base64.b64encode(b"\x89PNG poster").decode("ascii")
        plugin.on("export_frame", lambda params: {"base64": png})
        config = RunConfig(
            asset_base_url="http://assets.local/static",
            contents={"en": content},
            output_dir=tmp_path / "out",
            auto_export=True,
        )

        runner, summaries = _run(plugin, connect, config)

        summary = summaries["en"]
        assert summary.created == 1
        assert summary.errors == []
        assert runner.frame_id == "1:1"
        assert runner.cards_stack_id == "1:3"

        stack = poster_document.find("1:3")["children"]
        assert [card["name"] for card in stack] == ["01_Figure_g1"]
        card_id = stack[0]["id"]
        title_id = poster_document.find_named(card_id, "titleText")["id"]
        source_id = poster_document.find_named(card_id, "sourceText")["id"]
        assert poster_document.texts[title_id] == "T"
        assert poster_document.texts[source_id] == "Source: X"
        assert list(poster_document.fills.values()) == ["http://assets.local/static/a1.png"]

        exported = tmp_path / "out" / "250915_weekly_en_001.png"
        assert summary.exports == [exported]
        assert exported.read_bytes() == b"\x89PNG poster"
        assert plugin.calls_to("resize_poster_to_fit")[0]["posterId"] == "1:1"

    def test_failed_card_does_not_stop_the_rest(self, plugin, connect, poster_document, tmp_path):
        seeds = poster_document.find("2:1")
        seeds["children"] = [child for child in seeds["children"] if child["id"] != "2:7"]
        content = _write_content(
            tmp_path / "content.json",
            {"type": "paragraph", "text": "no body seed for me"},
            FIGURE_BLOCK,
        )

        _, summaries = _run(plugin, connect, RunConfig(contents={"en": content}))

        summary = summaries["en"]
        assert [card.ok for card in summary.cards] == [False, True]
        assert "01_Body_0" in summary.errors[0].error
        assert summary.created == 1
        assert plugin.calls_to("export_frame") == []

    def test_each_language_starts_from_a_clean_stack(self, plugin, connect, poster_document, tmp_path):
        english = _write_content(tmp_path / "en.json", FIGURE_BLOCK)
        german = _write_content(tmp_path / "de.json", dict(FIGURE_BLOCK, title="Titel"))

        _, summaries = _run(plugin, connect, RunConfig(contents={"en": english, "de": german}))

        assert list(summaries) == ["en", "de"]
        stack = poster_document.find("1:3")["children"]
        assert len(stack) == 1
        title_id = poster_document.find_named(stack[0]["id"], "titleText")["id"]
        assert poster_document.texts[title_id] == "Titel"
        assert len(plugin.calls_to("delete_multiple_nodes")) == 1

    def test_cards_scope_exports_every_card(self, plugin, connect, poster_document, tmp_path):
        plugin.on("export_frame", lambda params: {"base64": base64.b64encode(params["nodeId"].encode()).decode()})
        content = _write_content(tmp_path / "post.json", FIGURE_BLOCK, {"type": "paragraph", "text": "after"})
        config = RunConfig(contents={"en": content}, output_dir=tmp_path, auto_export=True)

        async def factory():
            return await connect(plugin)

        runner = PosterRunner(config, session_factory=factory)
        runner.mapping.export.scope = "cards"
        summary = asyncio.run(runner.run())["en"]

        assert [path.name for path in summary.exports] == ["post_en_001.png", "post_en_002.png"]
        assert summary.export_failures == 0

    def test_missing_working_area_is_fatal(self, plugin, connect, tmp_path):
        FakeDocument(node("0:1", "Page 1", "PAGE", [node("3:1", "Other", "FRAME")])).install(plugin)
        content = _write_content(tmp_path / "content.json", FIGURE_BLOCK)

        with pytest.raises(PosterRunError):
            _run(plugin, connect, RunConfig(contents={"en": content}))
        assert plugin.calls_to("append_card_to_container") == []

    def test_dry_run_never_connects(self, tmp_path):
        content = _write_content(tmp_path / "content.json", FIGURE_BLOCK, {"type": "paragraph", "text": "hello"})

        async def factory():
            raise AssertionError("dry run must not connect")

        runner = PosterRunner(RunConfig(contents={"en": content}, dry_run=True), session_factory=factory)
        assert asyncio.run(runner.run()) == {}
        report = runner.dry_run(runner.load_contents())
        assert report["en"][0] == "[#1 figure 1img title:Y source:Y]"
        assert report["en"][1].startswith("[#2 body")


class TestHelpers:

    def test_default_asset_dir(self):
        assert default_asset_dir(Path("/data/250915_weekly.json")) == Path("/data/assets/250915")
        assert default_asset_dir(Path("/data/weekly.json")) == Path("/data")

    def test_asset_dir_override(self, tmp_path):
        config = RunConfig(asset_dir=tmp_path)
        assert config.asset_dir_for(Path("/data/250915_weekly.json")) == tmp_path

    def test_poster_key(self):
        assert poster_key(Path("/data/250915 weekly.json")) == "250915_weekly"


class TestGetConfig:

    def test_defaults(self, clean_env):
        config = get_config([])
        assert config.bridge_url == "ws://localhost:3055"
        assert config.timeout == 30.0
        assert config.contents == {}
        assert not config.auto_export
        assert not config.dry_run

    def test_environment(self, clean_env):
        clean_env.setenv("BRIDGE_URL", "ws://bridge:9000")
        clean_env.setenv("FIGMA_CHANNEL", "poster-42")
        clean_env.setenv("FIGMA_COMMAND_TIMEOUT", "12.5")
        clean_env.setenv("AUTO_EXPORT", "1")
        clean_env.setenv("CONTENT_JSON_PATH", "/data/content.json")
        clean_env.setenv("ASSET_DIR", "/data/assets")

        config = get_config([])

        assert config.bridge_url == "ws://bridge:9000"
        assert config.channel == "poster-42"
        assert config.timeout == 12.5
        assert config.auto_export
        assert config.contents == {"en": Path("/data/content.json")}
        assert config.asset_dir == Path("/data/assets")

    def test_cli_overrides_environment(self, clean_env):
        clean_env.setenv("FIGMA_CHANNEL", "from-env")
        clean_env.setenv("CONTENT_JSON_PATH", "/data/env.json")

        config = get_config([
            "--channel=from-cli",
            "--content=/data/en.json",
            "--content-zh=/data/zh.json",
            "--dry-run",
            "--export",
            "--timeout=5",
            "--mapping=mapping.json",
            "--bogus",
        ])

        assert config.channel == "from-cli"
        assert config.contents == {"en": Path("/data/en.json"), "zh": Path("/data/zh.json")}
        assert config.dry_run and config.auto_export
        assert config.timeout == 5.0
        assert config.mapping_path == "mapping.json"


class TestMain:

    def test_missing_content_exits_with_failure(self, clean_env, monkeypatch):
        monkeypatch.setattr(main.sys, "argv", ["main.py"])
        monkeypatch.setattr(main.signal, "signal", lambda *args: None)
        with pytest.raises(SystemExit) as info:
            main.main()
        assert info.value.code == 1

    def test_bad_mapping_exits_with_failure(self, clean_env, monkeypatch, tmp_path):
        bad = tmp_path / "mapping.json"
        bad.write_text("{", encoding="utf-8")
        monkeypatch.setattr(main.sys, "argv", ["main.py", f"--mapping={bad}"])
        monkeypatch.setattr(main.signal, "signal", lambda *args: None)
        with pytest.raises(SystemExit) as info:
            main.main()
        assert info.value.code == 1
