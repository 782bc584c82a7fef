"""
External process invocation never raises.
"""

from __future__ import annotations

import subprocess
import sys

from pgharness import process
from pgharness.process import EXIT_NOT_FOUND, EXIT_OS_ERROR, EXIT_TIMEOUT, check_command, run_command


def test_captures_output(monkeypatch):
    seen = {}

    def fake_run(args, **kwargs):
        seen.update(kwargs, args=args)
        return subprocess.CompletedProcess(args, 0, stdout="hello\n", stderr="")

    monkeypatch.setattr(process.subprocess, "run", fake_run)
    result = run_command(["docker", "ps"], input_text="x", timeout=5)

    assert result.success
    assert result.stdout == "hello\n"
    assert result.argv == ("docker", "ps")
    assert seen["args"] == ["docker", "ps"]
    assert seen["input"] == "x"
    assert seen["timeout"] == 5
    assert seen["stderr"] == subprocess.PIPE


def test_merge_stderr(monkeypatch):
    seen = {}

    def fake_run(args, **kwargs):
        seen.update(kwargs)
        return subprocess.CompletedProcess(args, 3, stdout="out+err", stderr=None)

    monkeypatch.setattr(process.subprocess, "run", fake_run)
    result = run_command(["psql"], merge_stderr=True)

    assert seen["stderr"] == subprocess.STDOUT
    assert result.exit_code == 3
    assert result.stderr == ""
    assert not result.success


def test_missing_binary(monkeypatch):
    def fake_run(args, **kwargs):
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(process.subprocess, "run", fake_run)
    result = run_command(["no-such-docker", "ps"])
    assert result.exit_code == EXIT_NOT_FOUND
    assert "command not found" in result.stderr


def test_timeout(monkeypatch):
    def fake_run(args, **kwargs):
        raise subprocess.TimeoutExpired(args, kwargs["timeout"], output=b"partial")

    monkeypatch.setattr(process.subprocess, "run", fake_run)
    result = run_command(["sleep", "100"], timeout=1)
    assert result.exit_code == EXIT_TIMEOUT
    assert result.stdout == "partial"
    assert "timed out after 1s" in result.stderr


def test_other_os_error(monkeypatch):
    def fake_run(args, **kwargs):
        raise PermissionError("denied")

    monkeypatch.setattr(process.subprocess, "run", fake_run)
    result = run_command(["docker"])
    assert result.exit_code == EXIT_OS_ERROR


def test_check_command(monkeypatch):
    monkeypatch.setattr(process.shutil, "which", lambda name: "/usr/bin/docker" if name == "docker" else None)
    assert check_command("docker")
    assert not check_command("podman")


def test_invalid_utf8_output_is_replaced():
    script = "import sys; sys.stdout.buffer.write(b'\\xff\\xfe bad'); sys.stderr.buffer.write(b'\\xc3 err')"
    result = run_command([sys.executable, "-c", script])

    assert result.success, result.stderr
    assert result.stdout == "�� bad"
    assert result.stderr == "� err"


def test_decoding_arguments(monkeypatch):
    seen = {}

    def fake_run(args, **kwargs):
        seen.update(kwargs)
        return subprocess.CompletedProcess(args, 0, stdout="", stderr="")

    monkeypatch.setattr(process.subprocess, "run", fake_run)
    run_command(["psql"])
    assert seen["encoding"] == "utf-8"
    assert seen["errors"] == "replace"
