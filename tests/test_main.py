"""Tests for configuration loading and bootstrap helpers."""

from __future__ import annotations

import pytest

from roundtable import main
from roundtable.core.tool_schemas import BUILTIN_CAPABILITIES
from roundtable.core.types import EngineConfig
from roundtable.infra.database import Store

CONFIG = """
inference_backends:
  - name: "primary"
    base_url: "https://llm.example/v1"
    api_key: "${ROUNDTABLE_TEST_KEY}"
    model: "default/model"
  - name: "local"
    base_url: "http://localhost:8080/v1"
    model: "local/model"
    max_tokens: 1024
llm:
  main: ["primary", "local"]
  routing: "local"
engine:
  turn_pause: 0.25
  max_tool_rounds: 4
"""


class TestLoadConfig:

    def test_env_references_are_expanded(self, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv("ROUNDTABLE_TEST_KEY", "sk-test")
        path = tmp_path / "config.yaml"
        path.write_text(CONFIG, encoding="utf-8")

        cfg = main.load_config(path)

        assert cfg["inference_backends"][0]["api_key"] == "sk-test"

    def test_missing_file_exits(self, tmp_path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main.load_config(tmp_path / "absent.yaml")
        assert exc_info.value.code == 1


class TestBuilders:

    @pytest.fixture
    def cfg(self, tmp_path, monkeypatch) -> dict:
        monkeypatch.setenv("ROUNDTABLE_TEST_KEY", "sk-test")
        path = tmp_path / "config.yaml"
        path.write_text(CONFIG, encoding="utf-8")
        return main.load_config(path)

    def test_provider_configs(self, cfg: dict) -> None:
        providers = main.build_provider_configs(cfg)
        assert list(providers) == ["primary", "local"]
        assert providers["local"].max_tokens == 1024
        assert providers["primary"].api_key == "sk-test"

    def test_roles_resolve_and_fall_back_to_main(self, cfg: dict) -> None:
        providers = main.build_provider_configs(cfg)
        assert [p.name for p in main._role_backends(cfg, "main", providers)] == ["primary", "local"]
        assert [p.name for p in main._role_backends(cfg, "routing", providers)] == ["local"]
        assert [p.name for p in main._role_backends(cfg, "summarization", providers)] == [
            "primary", "local"]

    def test_unknown_backend_reference(self, cfg: dict) -> None:
        providers = main.build_provider_configs(cfg)
        cfg["llm"]["routing"] = ["missing"]
        with pytest.raises(ValueError):
            main._role_backends(cfg, "routing", providers)

    def test_engine_config_overrides_and_defaults(self, cfg: dict) -> None:
        engine_cfg = main.build_engine_config(cfg)
        assert engine_cfg.turn_pause == 0.25
        assert engine_cfg.max_tool_rounds == 4
        assert engine_cfg.infinite_pause == EngineConfig().infinite_pause

    def test_builtin_seeding(self, tmp_path) -> None:
        store = Store(tmp_path / "seed.db")
        store.init_db()
        assert main.seed_builtin_capabilities(store) == len(BUILTIN_CAPABILITIES)
        assert main.seed_builtin_capabilities(store) == 0
        assert all(c.is_builtin for c in store.list_capabilities())
