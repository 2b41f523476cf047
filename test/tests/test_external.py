"""Tests for external command execution."""

import subprocess
import sys

import pytest

from microbiome_asv.pipeline.external import require_executable, run_cmd


class TestRunCmd:
    def test_output_goes_to_step_log(self, tmp_path):
        log_file = tmp_path / "logs" / "01_echo.log"
        run_cmd(cmd=[sys.executable, "-c", "print('hello from step')"], log_file=log_file)

        text = log_file.read_text()
        assert text.startswith("$ ")
        assert "hello from step" in text

    def test_log_appends(self, tmp_path):
        log_file = tmp_path / "step.log"
        for word in ("first", "second"):
            run_cmd(cmd=[sys.executable, "-c", f"print('{word}')"], log_file=log_file)

        text = log_file.read_text()
        assert text.index("first") < text.index("second")

    def test_non_zero_exit(self, tmp_path, caplog):
        log_file = tmp_path / "fail.log"
        with pytest.raises(subprocess.CalledProcessError):
            run_cmd(
                cmd=[sys.executable, "-c", "import sys; sys.exit(3)"],
                log_file=log_file,
            )
        assert "exit code 3" in caplog.text

    def test_arguments_stringified(self, tmp_path):
        log_file = tmp_path / "args.log"
        run_cmd(
            cmd=[sys.executable, "-c", "import sys; print(sys.argv[1:])", tmp_path, 7],
            log_file=log_file,
        )
        assert "'7'" in log_file.read_text()


class TestRequireExecutable:
    def test_found(self):
        assert require_executable(sys.executable)

    def test_missing(self):
        with pytest.raises(FileNotFoundError, match="not found on PATH"):
            require_executable("definitely-not-a-real-tool-xyz")
