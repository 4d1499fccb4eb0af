"""Tests for the coordinator command line."""

import asyncio
import shutil
import threading
from unittest.mock import patch

import pytest

from dgrep.models import ConfigError
from dgrep.runner import build_request, main
from dgrep.server import GrepServer
from dgrep.service import RemoteGrep


@pytest.fixture
def background_server(log_file):
    """A real execution service running on its own event loop thread."""
    loop = asyncio.new_event_loop()
    server = GrepServer(RemoteGrep(default_path=str(log_file)), host="127.0.0.1", port=0)
    ready = threading.Event()

    def run():
        asyncio.set_event_loop(loop)
        loop.run_until_complete(server.start())
        ready.set()
        loop.run_forever()

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    ready.wait(timeout=5)

    yield server

    asyncio.run_coroutine_threadsafe(server.close(), loop).result(timeout=5)
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=5)
    loop.close()


class TestBuildRequest:
    def test_last_argument_is_pattern(self):
        request = build_request(["-i", "-n", "error"], "/var/log/app.log")
        assert request.pattern == "error"
        assert request.options == ("-i", "-n")
        assert request.path == "/var/log/app.log"

    def test_empty(self):
        with pytest.raises(ConfigError):
            build_request([])

    def test_non_flag_option(self):
        with pytest.raises(ConfigError, match="Invalid grep arguments"):
            build_request(["-m", "5", "error"])


class TestMain:
    def test_no_arguments_is_usage_error(self, capsys):
        with patch("dgrep.runner.Dispatcher") as dispatcher:
            with pytest.raises(SystemExit) as exc:
                main([])

        assert exc.value.code == 2
        dispatcher.assert_not_called()

    def test_missing_targets_file(self, tmp_path, capsys):
        with patch("dgrep.runner.Dispatcher") as dispatcher:
            code = main(["--targets", str(tmp_path / "none.json"), "ERROR"])

        assert code == 1
        assert "Target list not found" in capsys.readouterr().err
        dispatcher.assert_not_called()

    def test_empty_targets_file(self, write_targets, capsys):
        with patch("dgrep.runner.Dispatcher") as dispatcher:
            code = main(["--targets", str(write_targets([])), "ERROR"])

        assert code == 1
        dispatcher.assert_not_called()

    def test_invalid_timeout(self, write_targets):
        code = main(["--targets", str(write_targets(["a:1"])), "--dial-timeout", "0", "ERROR"])
        assert code == 1

    @pytest.mark.skipif(shutil.which("grep") is None, reason="grep not installed")
    def test_partial_failure_still_exits_zero(
        self, background_server, write_targets, closed_port, capsys
    ):
        targets = write_targets(
            [f"127.0.0.1:{background_server.port}", f"127.0.0.1:{closed_port}"]
        )

        code = main(["--targets", str(targets), "--no-color", "--", "-i", "error"])

        out = capsys.readouterr().out
        assert code == 0
        assert "Found 1 matches" in out
        assert "disk quota exceeded" in out
        assert "UNREACHABLE" in out
        assert "SUMMARY: 1 successful, 1 failed out of 2 machines" in out
        assert "Total matches found: 1 lines" in out

    @pytest.mark.skipif(shutil.which("grep") is None, reason="grep not installed")
    def test_grep_flags_before_pattern(self, background_server, write_targets, capsys):
        targets = write_targets([f"127.0.0.1:{background_server.port}"])

        code = main(["--targets", str(targets), "--no-color", "-i", "error"])

        out = capsys.readouterr().out
        assert code == 0
        assert "Found 1 matches" in out
        assert "disk quota exceeded" in out

    def test_grep_flags_mixed_with_own_flags(self, write_targets):
        targets = write_targets(["a:1"])

        with patch("dgrep.dashboard.Dashboard") as dashboard:
            code = main(["-i", "--targets", str(targets), "-n", "--dashboard", "ERROR"])

        assert code == 0
        (_, request, _, _), _ = dashboard.call_args
        assert request.pattern == "ERROR"
        assert request.options == ("-i", "-n")

    def test_pattern_after_separator_may_look_like_a_flag(self, write_targets):
        targets = write_targets(["a:1"])

        with patch("dgrep.dashboard.Dashboard") as dashboard:
            code = main(["--targets", str(targets), "--dashboard", "-i", "--", "--path"])

        assert code == 0
        (_, request, _, _), _ = dashboard.call_args
        assert request.pattern == "--path"
        assert request.options == ("-i",)

    def test_dashboard_flag_runs_app(self, write_targets):
        targets = write_targets(["a:1"])

        with patch("dgrep.dashboard.Dashboard") as dashboard:
            code = main(["--targets", str(targets), "--dashboard", "ERROR"])

        assert code == 0
        dashboard.return_value.run.assert_called_once()
        (passed_targets, request, dial, call), kwargs = dashboard.call_args
        assert request.pattern == "ERROR"
        assert dial == 3.0 and call == 5.0
