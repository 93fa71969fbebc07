"""Tests for the diagnostics CLI."""

from __future__ import annotations

import json

import pytest

from src.config import get_settings
from src.main import build_parser, main


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.setenv("HEALTHSYNC_STORAGE_BACKEND", "json")
    monkeypatch.setenv("HEALTHSYNC_STORAGE_PATH", str(tmp_path / "state.json"))
    monkeypatch.delenv("HEALTHSYNC_DEVICE_MANUFACTURER", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestCli:
    def test_compat_prints_profile(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["compat", "Xiaomi"]) == 0

        payload = json.loads(capsys.readouterr().out)
        assert payload["level"] == "low"
        assert payload["recommended_frequency_minutes"] == 60
        assert payload["requires_wifi"] is True

    def test_compat_without_manufacturer(self) -> None:
        assert main(["compat"]) == 2

    def test_compat_uses_configured_manufacturer(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setenv("HEALTHSYNC_DEVICE_MANUFACTURER", "Google")
        get_settings.cache_clear()

        assert main(["compat"]) == 0
        assert json.loads(capsys.readouterr().out)["level"] == "high"

    def test_status_on_empty_store(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["status"]) == 0
        assert json.loads(capsys.readouterr().out) == {}

    def test_stats_for_unknown_task(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["stats", "--task-id", "nightly"]) == 0

        payload = json.loads(capsys.readouterr().out)
        assert payload["task_id"] == "nightly"
        assert payload["total_executions"] == 0

    def test_command_is_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
