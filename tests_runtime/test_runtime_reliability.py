from __future__ import annotations

import importlib
import inspect
import json
import re
from pathlib import Path

import pytest

MODULES = [
    "config",
    "entity_store",
    "functions",
    "llm",
    "market_data",
    "pressure_index",
    "semantic_pressure",
    "opportunity_scanner",
    "manual_trading",
    "auto_exit",
    "simulator",
    "portfolio",
    "advanced_orders",
    "backtester",
    "reports",
    "learning",
    "alerts",
    "scheduler",
    "i18n",
]


@pytest.fixture
def mock_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MOCK_API_CALLS", "true")

    import config

    config._SETTINGS = None
    yield
    config._SETTINGS = None


def test_imports_under_mock_mode(mock_env: None) -> None:
    for module_name in MODULES:
        mod = importlib.import_module(module_name)
        assert mod is not None


def test_mock_mode_prevents_openai_call(mock_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
    import llm

    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-key-123456")

    def _should_not_call(*args, **kwargs):  # type: ignore[no-untyped-def]
        raise AssertionError("OpenAI call should not happen in MOCK mode")

    monkeypatch.setattr(llm, "call_structured", _should_not_call)

    fallback = {"sentiment": 0.0}
    assert llm.invoke_llm("prompt", {"type": "object"}, fallback, name="runtime") == fallback


def test_store_lock_is_cross_platform(mock_env: None, tmp_path: Path) -> None:
    import entity_store
    import portfolio

    for module in (entity_store, portfolio):
        assert "fcntl" not in inspect.getsource(module)

    target = tmp_path / "Stock.json"
    target.write_text("[]", encoding="utf-8")

    with entity_store.file_lock(target):
        assert target.read_text(encoding="utf-8") == "[]"
    assert (tmp_path / "Stock.json.lock").exists()


def test_scheduler_test_mode_no_network(mock_env: None, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    import scheduler
    from entity_store import LocalEntityStore

    store = LocalEntityStore(str(tmp_path / "entities"))
    seen = {}

    def _fake_pressure(store, symbols, pause_seconds=None):  # type: ignore[no-untyped-def]
        seen["symbols"] = symbols
        seen["pause"] = pause_seconds
        return {"successful": len(symbols)}

    def _fake_semantic(store, symbols, pause_seconds=None, send=True):  # type: ignore[no-untyped-def]
        seen["send"] = send
        return {"successful": len(symbols)}

    monkeypatch.setattr(scheduler, "pressure_job", _fake_pressure)
    monkeypatch.setattr(scheduler, "semantic_job", _fake_semantic)

    result = scheduler.start_scheduler("test", store=store)

    assert result is not None
    assert not result.failed
    assert len(seen["symbols"]) == 3
    assert seen["pause"] == 0
    assert seen["send"] is False


def test_entity_store_survives_reload(mock_env: None, tmp_path: Path) -> None:
    from entity_store import LocalEntityStore

    root = tmp_path / "entities"
    LocalEntityStore(str(root)).create("WatchedStock", {"symbol": "AAPL"})

    reloaded = LocalEntityStore(str(root))
    assert [r["symbol"] for r in reloaded.list("WatchedStock")] == ["AAPL"]
    assert json.loads((root / "WatchedStock.json").read_text(encoding="utf-8"))[0]["symbol"] == "AAPL"


def test_doctor_command_runs(mock_env: None) -> None:
    from flowpressure import cli

    code = cli.doctor()
    assert code == 0


def test_doctor_masks_secrets_and_includes_run_id(
    mock_env: None, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    import config
    from flowpressure import cli

    monkeypatch.setenv("OPENAI_API_KEY", "sk-super-secret-1234")
    monkeypatch.setenv("FINNHUB_API_KEY", "finnhub-secret-9876")
    monkeypatch.setenv("DISCORD_WEBHOOK_URL", "https://discord.com/api/webhooks/123/very-secret")
    config._SETTINGS = None

    code = cli.doctor()
    out = capsys.readouterr().out

    assert code == 0
    assert "sk-super-secret-1234" not in out
    assert "finnhub-secret" not in out
    assert "very-secret" not in out
    assert "OPENAI_API_KEY: sk-...1234" in out
    assert "DISCORD_WEBHOOK_URL: https://discord.com/***" in out
    assert re.search(r"RUN_ID: [0-9a-f\-]{36}", out)


def test_doctor_does_not_crash_minimal_env(mock_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
    from flowpressure import cli

    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)

    code = cli.doctor()
    assert code == 0


def test_cli_invoke_unknown_function(mock_env: None, capsys: pytest.CaptureFixture[str]) -> None:
    from flowpressure import cli

    assert cli.main(["invoke", "noSuchFunction"]) == 2
    assert "unknown function" in capsys.readouterr().err
    assert cli.main(["invoke", "aiLearning", "{not json"]) == 2


def test_cli_standalone_invoke_script(mock_env: None, capsys: pytest.CaptureFixture[str]) -> None:
    from flowpressure import cli

    assert cli.main_invoke(["noSuchFunction"]) == 2
    assert "unknown function" in capsys.readouterr().err
    assert cli.main_invoke(["aiLearning", "{not json"]) == 2


def test_cli_lists_functions(mock_env: None, capsys: pytest.CaptureFixture[str]) -> None:
    from flowpressure import cli

    assert cli.main(["functions"]) == 0
    assert "simulateTrade" in capsys.readouterr().out.split()
