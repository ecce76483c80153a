from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

from bytestack import (
    STACK_UNDERFLOW,
    ExecutionError,
    StructureError,
    UndefinedSubroutineError,
    main,
    run_source,
)

ROOT = Path(__file__).resolve().parents[1]

HELLO = "\n".join(
    f"push {ord(c)}\nprint_char" for c in "Hello World"
) + "\nhalt\n"


def _cli(args: list[str], *, stdin: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, str(ROOT / "bytestack.py"), *args],
        cwd=ROOT,
        env=dict(os.environ),
        input=stdin,
        text=True,
        capture_output=True,
        check=False,
    )


def test_run_source_success():
    result = run_source(HELLO)
    assert result.ok
    assert result.output == b"Hello World"
    assert result.reason == "halt"
    assert result.error is None


def test_run_source_load_error_produces_no_output():
    result = run_source("push 72\nprint_char\nif")
    assert not result.ok
    assert result.output == b""
    assert isinstance(result.error, StructureError)


def test_run_source_undefined_call():
    result = run_source("halt\nmissing")
    assert isinstance(result.error, UndefinedSubroutineError)


def test_run_source_runtime_error_keeps_partial_output():
    result = run_source("push 79\nprint_char\npush 75\nprint_char\npop")
    assert not result.ok
    assert result.output == b"OK"
    assert isinstance(result.error, ExecutionError)
    assert result.error.kind == STACK_UNDERFLOW
    assert result.error.line == 5


def test_runs_are_independent():
    first = run_source("push 1\npush 2")
    second = run_source("push 3")
    assert first.stack == [1, 2]
    assert second.stack == [3]


def test_cli_hello(tmp_path: Path):
    p = tmp_path / "hello.bs"
    p.write_text(HELLO, encoding="utf-8")
    proc = _cli([str(p)])
    assert proc.returncode == 0, proc.stderr
    assert proc.stdout == "Hello World"


def test_cli_runtime_error(tmp_path: Path):
    p = tmp_path / "bad.bs"
    p.write_text("push 49\nprint_char\npop\n", encoding="utf-8")
    proc = _cli([str(p)])
    assert proc.returncode == 1
    assert proc.stdout == "1"
    assert "Runtime error at line 3: Stack underflow" in proc.stderr


def test_cli_stack_size(tmp_path: Path):
    p = tmp_path / "deep.bs"
    p.write_text("push 1\ndup\ndup\n", encoding="utf-8")
    proc = _cli(["--stack-size", "2", str(p)])
    assert proc.returncode == 1
    assert "Stack overflow" in proc.stderr


def test_cli_verbose_trace(tmp_path: Path):
    p = tmp_path / "t.bs"
    p.write_text("push 5\nprint_byte\n", encoding="utf-8")
    proc = _cli(["-v", str(p)])
    assert proc.returncode == 0
    assert proc.stdout == "5"
    assert "Line 1: push 5" in proc.stderr
    assert "Stack: [5]" in proc.stderr
    assert "Program halted." in proc.stderr
    assert "Final stack: []" in proc.stderr


def test_cli_step_mode_reads_stdin(tmp_path: Path):
    p = tmp_path / "t.bs"
    p.write_text("push 1\npop\n", encoding="utf-8")
    proc = _cli(["--step", str(p)], stdin="\n\n")
    assert proc.returncode == 0
    assert "Line 2: pop" in proc.stderr


def test_cli_self_test():
    proc = _cli(["--test"])
    assert proc.returncode == 0, proc.stdout
    assert "passed" in proc.stdout


def test_main_parse_error(tmp_path: Path, capsys):
    p = tmp_path / "bad.bs"
    p.write_text("push 300\n", encoding="utf-8")
    assert main([str(p)]) == 1
    assert "Parse error at line 1: argument 300 out of range 0..255" in capsys.readouterr().err


def test_main_missing_file(tmp_path: Path, capsys):
    assert main([str(tmp_path / "nope.bs")]) == 1
    assert "Error: could not read" in capsys.readouterr().err


def test_main_dump(tmp_path: Path, capsys):
    p = tmp_path / "d.bs"
    p.write_text("push 1\nif\nthen\n", encoding="utf-8")
    assert main(["--dump", str(p)]) == 0
    out = capsys.readouterr().out
    assert "push 1" in out
    assert "→3" in out


def test_main_rejects_non_positive_stack_size(tmp_path: Path, capsys):
    p = tmp_path / "t.bs"
    p.write_text("push 1\n", encoding="utf-8")
    for size in ("0", "-3"):
        with pytest.raises(SystemExit) as exc:
            main(["--stack-size", size, str(p)])
        assert exc.value.code == 2
        assert "--stack-size must be at least 1" in capsys.readouterr().err
