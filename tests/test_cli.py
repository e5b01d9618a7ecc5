"""
Tests for the CLI interface.
"""
import json
import os
import shutil
import tempfile
import time

from typer.testing import CliRunner

from media_guard.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from media_guard.core.cache import FileCacheBackend
from media_guard.core.fingerprint import pending_key
from media_guard.storage.models import DailyUsageState, PendingJobRecord
from media_guard.storage.repository import UsageRepository, get_today_date

runner = CliRunner()


class TestCLI:
    """Test CLI commands."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.usage_dir = os.path.join(self.temp_dir, "usage")
        self.cache_dir = os.path.join(self.temp_dir, "cache")
        self.env = {
            "MEDIA_GUARD_USAGE_DIR": self.usage_dir,
            "MEDIA_GUARD_CACHE_DIR": self.cache_dir,
        }

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def invoke(self, args, **env):
        return runner.invoke(app, args, env={**self.env, **env})

    def seed_today(self, **counters):
        UsageRepository(self.usage_dir).save_daily_usage(
            DailyUsageState(date=get_today_date(), **counters)
        )

    def test_no_command(self):
        result = self.invoke([])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_status_without_limits(self):
        result = self.invoke(["status"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage for" in result.output
        assert "No daily limits configured." in result.output
        assert "Resets in" in result.output

    def test_status_with_limits(self):
        self.seed_today(images=8)
        result = self.invoke(["status"], MEDIA_GUARD_DAILY_LIMIT_IMAGES="10")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Images" in result.output
        assert "80%" in result.output

    def test_status_tracking_disabled(self):
        result = self.invoke(["status"], MEDIA_GUARD_TRACK_USAGE="false")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage tracking is disabled" in result.output

    def test_usage_json(self):
        self.seed_today(images=3, total_cost=0.009)
        result = self.invoke(["usage", "--json"])

        assert result.exit_code == EXIT_CODE_PASS
        document = json.loads(result.output)
        assert document["date"] == get_today_date()
        assert document["images"] == 3
        assert document["total_cost"] == 0.009

    def test_usage_text(self):
        self.seed_today(videos=2, video_seconds=10)
        result = self.invoke(["usage"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Images: 0" in result.output
        assert "Videos: 2 (10s)" in result.output

    def test_history_empty(self):
        result = self.invoke(["history"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage data found" in result.output

    def test_history_with_data(self):
        repository = UsageRepository(self.usage_dir)
        repository.save_daily_usage(DailyUsageState(date="2026-03-09", images=4))
        repository.save_daily_usage(DailyUsageState(date="2026-03-10", images=7))

        result = self.invoke(["history", "--days", "1"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "2026-03-10" in result.output
        assert "2026-03-09" not in result.output

    def test_history_rejects_invalid_days(self):
        result = self.invoke(["history", "--days", "0"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "--days must be at least 1" in result.output

    def test_pending_empty(self):
        result = self.invoke(["pending"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No pending jobs" in result.output

    def test_pending_lists_records(self):
        record = PendingJobRecord(
            request_id="req-42",
            endpoint_id="fal-ai/veo-3",
            submitted_at=int(time.time() * 1000) - 90 * 60 * 1000,
        )
        FileCacheBackend(self.cache_dir).set(pending_key("ab" * 32), record.to_dict())

        result = self.invoke(["pending"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "req-42" in result.output
        assert "fal-ai/veo-3" in result.output
        assert "1h 30m" in result.output

    def test_invalid_config_exits(self):
        config_path = os.path.join(self.temp_dir, "config.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            f.write("limits:\n  tokens: 5\n")

        result = self.invoke(["--config", config_path, "status"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error loading settings" in result.output

    def test_missing_config_exits(self):
        result = self.invoke(["--config", os.path.join(self.temp_dir, "nope.yaml"), "usage"])
        assert result.exit_code == EXIT_CODE_FAIL
