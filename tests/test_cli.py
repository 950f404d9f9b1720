"""End-to-end tests running the command line entry point in a subprocess."""

import json
import os
import signal
import subprocess
import sys
import time
from pathlib import Path

import pytest

from conftest import PYTHON, fixture_script, read_text

REPO_ROOT = Path(__file__).resolve().parent.parent

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process semantics")


def cli_env() -> dict:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT), env.get("PYTHONPATH")]))
    return env


def cli_command(*args: str) -> list:
    return [PYTHON, "-m", "pipeline_manifold.main", *args]


def run_cli(*args: str, input: bytes = b"", timeout: float = 30) -> subprocess.CompletedProcess:
    return subprocess.run(
        cli_command(*args),
        input=input,
        capture_output=True,
        cwd=REPO_ROOT,
        env=cli_env(),
        timeout=timeout,
    )


def write_config(tmp_path: Path, document: dict) -> str:
    document.setdefault("settings", {"DRAIN_TIMEOUT": 10})
    path = tmp_path / "pipeline.json"
    path.write_text(json.dumps(document))
    return str(path)


class TestArguments:
    def test_missing_config_flag(self):
        result = run_cli()

        assert result.returncode == 1
        assert b"Must supply --config" in result.stderr

    def test_missing_config_file(self, tmp_path):
        result = run_cli("--config", str(tmp_path / "absent.yaml"))

        assert result.returncode == 2
        assert b"Could not load config file" in result.stderr

    def test_unparsable_config_file(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("outputs: [unclosed\n")

        result = run_cli("-c", str(path))

        assert result.returncode == 2
        assert b"Could not load config file" in result.stderr

    def test_invalid_stage(self, tmp_path):
        config = write_config(tmp_path, {"outputs": [{"args": ["no-bin"]}]})

        result = run_cli("-c", config)

        assert result.returncode == 2


class TestPipelines:
    def test_master_output_reaches_stdout_and_children(self, tmp_path):
        target = tmp_path / "out.txt"
        config = write_config(
            tmp_path,
            {
                "input": {"bin": PYTHON, "args": [fixture_script("emit_and_exit.py"), "line 1\nline 2\n", 0]},
                "outputs": [{"bin": PYTHON, "args": [fixture_script("write_file.py"), str(target)]}],
            },
        )

        result = run_cli("-c", config)

        assert result.returncode == 0, result.stderr
        assert result.stdout == b"line 1\nline 2\n"
        assert read_text(target) == "line 1\nline 2\n"

    def test_stdin_flows_through_nested_stages(self, tmp_path):
        target = tmp_path / "echoed.txt"
        config = write_config(
            tmp_path,
            {
                "input": "stdin",
                "outputs": [
                    {
                        "bin": PYTHON,
                        "args": [fixture_script("echo.py")],
                        "pipes": [{"bin": PYTHON, "args": [fixture_script("write_file.py"), str(target)]}],
                    }
                ],
            },
        )

        result = run_cli("-c", config, input=b"hello")

        assert result.returncode == 0, result.stderr
        assert result.stdout == b"hello"
        assert read_text(target) == "echo - hello"

    def test_failing_master_exit_status(self, tmp_path):
        config = write_config(
            tmp_path,
            {"input": {"bin": PYTHON, "args": ["-c", "import os, signal; os.kill(os.getpid(), signal.SIGTERM)"]}},
        )

        result = run_cli("-c", config)

        assert result.returncode == 128 + signal.SIGTERM

    def test_crashing_child_is_respawned_until_sigterm(self, tmp_path):
        counter = tmp_path / "spawns.txt"
        config = write_config(
            tmp_path,
            {"outputs": [{"bin": PYTHON, "args": [fixture_script("count_spawns.py"), str(counter)]}]},
        )
        proc = subprocess.Popen(
            cli_command("-c", config),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=REPO_ROOT,
            env=cli_env(),
        )
        try:
            deadline = time.monotonic() + 15
            while read_text(counter).count("spawned") < 2 and time.monotonic() < deadline:
                time.sleep(0.05)
            assert read_text(counter).count("spawned") >= 2

            proc.send_signal(signal.SIGTERM)
            _, stderr = proc.communicate(timeout=15)
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()

        assert proc.returncode == 0, stderr
