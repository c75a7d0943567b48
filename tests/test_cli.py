"""Tests for the remote-watch command line."""

import io
import json
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest.mock import AsyncMock, patch

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from channel.connection import Connection
from channel.discovery import TargetInfo
from channel.errors import TargetNotFound
from engine.cli import _print_result, main
from engine.types import CompletionReason, CompletionResult, Phase


def _result(phase=Phase.COMPLETE, reason=CompletionReason.STOP_STABLE, timed_out=False):
    return CompletionResult(
        final_text="All tests pass.",
        final_activity_log=("Running tests",),
        reason=reason,
        timed_out=timed_out,
        phase=phase,
        elapsed=4.2,
    )


class TestPrintResult(unittest.TestCase):

    def test_exit_codes(self):
        with redirect_stdout(io.StringIO()), redirect_stderr(io.StringIO()):
            self.assertEqual(_print_result(_result(), None), 0)
            self.assertEqual(_print_result(_result(Phase.TIMEOUT, CompletionReason.HARD_TIMEOUT,
                                                   timed_out=True), None), 2)
            self.assertEqual(_print_result(None, None), 1)

    def test_final_text_on_stdout_and_json_saved(self):
        out = io.StringIO()
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "result.json")
            with redirect_stdout(out), redirect_stderr(io.StringIO()):
                _print_result(_result(), path)
            with open(path) as f:
                saved = json.load(f)
        self.assertEqual(out.getvalue().strip(), "All tests pass.")
        self.assertEqual(saved["reason"], "stop_stable")
        self.assertEqual(saved["final_activity_log"], ["Running tests"])


class TestMain(unittest.TestCase):

    def run_main(self, *argv):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = main(["--project-root", _base, "--log-level", "ERROR", *argv])
        return code, out.getvalue(), err.getvalue()

    def test_no_command(self):
        with redirect_stdout(io.StringIO()):
            self.assertEqual(main([]), 1)

    def test_targets_marks_selection(self):
        targets = [
            TargetInfo("w", "service_worker", "worker", "", "ws://x/w", 9222),
            TargetInfo("a", "page", "my-app - Antigravity", "vscode-file://workbench.html",
                       "ws://x/a", 9222),
        ]
        with patch("engine.cli.list_all_targets", AsyncMock(return_value=targets)):
            code, out, _ = self.run_main("targets")
        self.assertEqual(code, 0)
        lines = out.splitlines()
        self.assertTrue(lines[0].startswith("   9222"))
        self.assertTrue(lines[1].startswith(" * 9222"))

    def test_targets_as_json(self):
        targets = [TargetInfo("a", "page", "my-app - Antigravity", "vscode-file://workbench.html",
                              "ws://x/a", 9223)]
        with patch("engine.cli.list_all_targets", AsyncMock(return_value=targets)):
            code, out, _ = self.run_main("targets", "--json")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out), [{
            "id": "a",
            "type": "page",
            "title": "my-app - Antigravity",
            "url": "vscode-file://workbench.html",
            "websocket_url": "ws://x/a",
            "port": 9223,
        }])

    def test_bad_config_reported(self):
        with tempfile.TemporaryDirectory() as tmp:
            with open(os.path.join(tmp, "watch_config.yaml"), "w") as f:
                f.write("monitor: [1, 2]\n")
            err = io.StringIO()
            with redirect_stdout(io.StringIO()), redirect_stderr(err):
                code = main(["--project-root", tmp, "--env", "none", "targets"])
        self.assertEqual(code, 1)
        self.assertIn("Bad configuration", err.getvalue())

    def test_targets_none_found(self):
        with patch("engine.cli.list_all_targets", AsyncMock(return_value=[])):
            code, _, err = self.run_main("targets")
        self.assertEqual(code, 1)
        self.assertIn("No targets", err)

    def test_send_reports_connection_failure(self):
        failing = AsyncMock(side_effect=TargetNotFound((9222, 9223)))
        with patch.object(Connection, "connect", failing):
            code, _, err = self.run_main("send", "hello", "--workspace", "my-app")
        self.assertEqual(code, 1)
        self.assertIn("FAILED", err)
        self.assertIn("9223", err)


if __name__ == "__main__":
    unittest.main()
