"""Tests for the command-line entry point."""

import pytest

from run import main, parse_args


class TestParseArgs:
    """Tests for parse_args."""

    def test_defaults(self):
        args = parse_args([])
        assert args.schedule is None
        assert args.settings is None
        assert args.log_level is None

    def test_options(self):
        args = parse_args(["--schedule", "s.json", "--settings", "c.yaml", "--log-level", "debug"])
        assert (args.schedule, args.settings, args.log_level) == ("s.json", "c.yaml", "debug")


class TestMain:
    """Tests for main exit codes."""

    @pytest.mark.asyncio
    async def test_invalid_settings_exit_code(self, tmp_path):
        settings = tmp_path / "settings.yaml"
        settings.write_text("retry:\n  flaky: {}\n", encoding="utf-8")
        assert await main(["--settings", str(settings)]) == 1

    @pytest.mark.asyncio
    async def test_missing_schedule_exit_code(self, tmp_path):
        settings = tmp_path / "settings.yaml"
        settings.write_text(f"log_dir: {tmp_path / 'logs'}\n", encoding="utf-8")
        code = await main(["--settings", str(settings), "--schedule", str(tmp_path / "missing.json")])
        assert code == 1

    @pytest.mark.asyncio
    async def test_invalid_schedule_exit_code(self, tmp_path):
        settings = tmp_path / "settings.yaml"
        settings.write_text(f"log_dir: {tmp_path / 'logs'}\n", encoding="utf-8")
        schedule = tmp_path / "schedule.json"
        schedule.write_text('{"config": {"posts": [{"id": "1", "platforms": []}]}}', encoding="utf-8")
        assert await main(["--settings", str(settings), "--schedule", str(schedule)]) == 1
