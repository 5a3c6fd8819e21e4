"""Tests for settings, metrics collection and logging."""

import json
import logging
import os
import tempfile
import time
import pytest
from pathlib import Path

from aura.config.settings import Settings, section_fields
from aura.metrics.collector import MetricsCollector
from aura.utils.logging import JsonFormatter, cleanup_old_logs, setup_logging


class TestSettings:
    """Layered configuration."""

    def test_defaults(self):
        settings = Settings()

        assert settings.audio.sample_rate == 16000
        assert settings.audio.timeslice_ms == 500
        assert settings.analysis.trend_threshold == 0.15
        assert settings.analysis.mixed_spread_threshold == 0.25
        assert settings.providers.cloning_namespace == "zyphra_"
        assert settings.validate() == []

    def test_load_from_file(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            config_path = Path(tmp_dir) / "aura.json"
            config_path.write_text(json.dumps({
                "analysis": {"trend_threshold": 0.2, "top_themes": 3, "unknown_key": 1},
                "sync": {"api_url": "https://aura.example.com"},
            }))
            settings = Settings(config_path)

            assert settings.analysis.trend_threshold == 0.2
            assert settings.analysis.top_themes == 3
            assert settings.sync.api_url == "https://aura.example.com"
            assert not hasattr(settings.analysis, "unknown_key")

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        config_path = tmp_path / "aura.json"
        config_path.write_text(json.dumps({"sync": {"api_url": "https://from-file"}}))
        monkeypatch.setenv("AURA_API_URL", "https://from-env")
        monkeypatch.setenv("AURA_TREND_THRESHOLD", "0.1")

        settings = Settings(config_path)
        assert settings.sync.api_url == "https://from-env"
        assert settings.analysis.trend_threshold == 0.1

    def test_unreadable_file_keeps_defaults(self, tmp_path):
        config_path = tmp_path / "aura.json"
        config_path.write_text("{broken")
        assert Settings(config_path).sync.api_url == "http://localhost:3005"

    def test_save_and_reload(self, tmp_path):
        settings = Settings()
        settings.analysis.top_themes = 7
        settings.save_to_file(tmp_path / "saved.json")

        assert Settings(tmp_path / "saved.json").analysis.top_themes == 7

    def test_validate_reports_issues(self):
        settings = Settings()
        settings.audio.sample_rate = 12345
        settings.analysis.trend_threshold = 0
        settings.providers.cloning_namespace = ""

        issues = settings.validate()
        assert len(issues) == 3

    def test_provider_configs(self):
        settings = Settings()
        gemini = settings.get_provider_config("gemini")
        assert gemini["history_window"] == 5
        assert settings.system_prompts.persona in gemini["system_prompt"]
        assert settings.get_provider_config("zyphra")["speaking_rate"] == 15
        with pytest.raises(ValueError):
            settings.get_provider_config("whisper")

    def test_to_dict_covers_every_field(self):
        settings = Settings()
        data = settings.to_dict()
        assert set(data["analysis"]) == set(section_fields(settings.analysis))


class TestMetricsCollector:

    def test_records_only_during_session(self, tmp_path):
        collector = MetricsCollector(tmp_path)
        collector.record_latency("stt", 100)
        assert collector.get_summary() == {"error": "No active session"}

    def test_summary(self, tmp_path):
        collector = MetricsCollector(tmp_path)
        collector.start_session("session_1")
        for value in (100, 200, 300):
            collector.record_latency("e2e", value)
        collector.record_turn()
        collector.record_error("turn", "boom")
        collector.record_fallback("synthesis", "cloned", "HTTP 500")
        collector.record_served("synthesis", "narration")
        collector.record_served("synthesis", "narration")

        summary = collector.get_summary()
        assert summary["completed_turns"] == 1
        assert summary["total_errors"] == 1
        assert summary["total_fallbacks"] == 1
        assert summary["served_tiers"] == {"synthesis": {"narration": 2}}
        assert summary["e2e_latency_ms"]["avg"] == 200
        assert summary["e2e_latency_ms"]["samples"] == 3
        assert summary["stt_latency_ms"]["samples"] == 0

    def test_unknown_stage(self, tmp_path):
        collector = MetricsCollector(tmp_path)
        with pytest.raises(ValueError):
            collector.record_latency("vad", 1)

    def test_save_metrics(self, tmp_path):
        collector = MetricsCollector(tmp_path)
        collector.start_session("session_1")
        collector.record_latency("ai", 420)
        collector.end_session()

        path = collector.save_metrics()
        data = json.loads(path.read_text())
        assert data["session_id"] == "session_1"
        assert data["latencies"]["ai"] == [420]
        assert data["end_time"] is not None

    def test_save_without_session(self, tmp_path):
        assert MetricsCollector(tmp_path).save_metrics() is None


class TestLogging:

    def test_setup_creates_log_file(self, tmp_path):
        log_path = setup_logging(log_dir=tmp_path, log_format="json")
        assert log_path.parent == tmp_path
        assert log_path.name.startswith("aura_")

    def test_session_log_file(self, tmp_path):
        log_path = setup_logging(log_dir=tmp_path, session_id="session_1")
        assert log_path.name.startswith("session_session_1_")

    def test_no_file_logging(self, tmp_path):
        assert setup_logging(log_file=False) is None

    def test_json_formatter(self):
        record = logging.LogRecord("aura", logging.INFO, __file__, 1, "hello %s", ("there",), None)
        record.session_id = "session_1"
        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "hello there"
        assert data["level"] == "INFO"
        assert data["attributes"]["session_id"] == "session_1"

    def test_cleanup_old_logs(self, tmp_path):
        old_log = tmp_path / "aura_old.log"
        new_log = tmp_path / "aura_new.log"
        old_log.write_text("old")
        new_log.write_text("new")
        ten_days_ago = time.time() - 10 * 24 * 3600
        os.utime(old_log, (ten_days_ago, ten_days_ago))

        assert cleanup_old_logs(tmp_path, keep_days=7) == 1
        assert not old_log.exists()
        assert new_log.exists()
