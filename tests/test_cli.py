import builtins
from typing import Iterator, List

import pytest

from picol import run_cli


def feed_input(monkeypatch: pytest.MonkeyPatch, lines: List[str]) -> None:
    remaining: Iterator[str] = iter(lines)

    def fake_input(prompt: str = "") -> str:
        try:
            return next(remaining)
        except StopIteration:
            raise EOFError

    monkeypatch.setattr(builtins, "input", fake_input)


def test_source_mode(capsys):
    assert run_cli(["-source", "set a hello; puts $a"]) == 0
    assert capsys.readouterr().out == "hello\n"


def test_source_mode_error(capsys):
    assert run_cli(["-source", "puts a\nnope"]) == 1
    captured = capsys.readouterr()
    assert captured.out == "a\n"
    assert "Traceback (most recent call last):" in captured.err
    assert "No such command 'nope'" in captured.err


def test_traceback_json(capsys):
    assert run_cli(["-source", "nope", "--traceback-json"]) == 1
    assert '"message": "No such command \'nope\'"' in capsys.readouterr().err


def test_escaping_break_is_failure(capsys):
    assert run_cli(["-source", "break"]) == 1
    assert 'invoked "break" outside of a loop' in capsys.readouterr().err


def test_run_file(tmp_path, capsys):
    script = tmp_path / "fib.tcl"
    script.write_text(
        "proc fib {n} {\n"
        "    if {< $n 2} {return $n}\n"
        "    return [+ [fib [- $n 1]] [fib [- $n 2]]]\n"
        "}\n"
        "puts [fib 15]\n",
        encoding="utf-8",
    )
    assert run_cli([str(script)]) == 0
    assert capsys.readouterr().out == "610\n"


def test_missing_file(tmp_path, capsys):
    assert run_cli([str(tmp_path / "absent.tcl")]) == 1
    assert "Failed to read" in capsys.readouterr().err


def test_undecodable_file(tmp_path, capsys):
    script = tmp_path / "bad.tcl"
    script.write_bytes(b"puts \xff\xfe\n")
    assert run_cli([str(script)]) == 1
    assert "ParseError" in capsys.readouterr().err


def test_source_flag_requires_program(capsys):
    assert run_cli(["-source"]) == 1
    assert "-source requires a program string" in capsys.readouterr().err


def test_extension_flag(capsys, limits_path):
    assert run_cli(["--ext", limits_path, "-source", "steplimit 2; puts a; puts b; puts c"]) == 1
    captured = capsys.readouterr()
    assert captured.out == "a\nb\n"
    assert "Step limit of 2 commands exceeded" in captured.err


def test_bad_extension_flag(tmp_path, capsys):
    assert run_cli(["--ext", str(tmp_path / "absent.py"), "-source", "puts a"]) == 1
    assert "ExtensionError" in capsys.readouterr().err


def test_repl(monkeypatch, capsys):
    feed_input(monkeypatch, ["set x 5", "proc f {} {", "    return 42", "}", "f", "nope"])
    assert run_cli([]) == 0
    captured = capsys.readouterr()
    assert "[0] 5" in captured.out
    assert "[0] 42" in captured.out
    assert "[1] No such command 'nope'" in captured.out
    assert "No such command 'nope'" in captured.err


def test_repl_survives_runaway_recursion(monkeypatch, capsys):
    feed_input(monkeypatch, ["proc f {} {f}", "f", "set x 1"])
    assert run_cli([]) == 0
    captured = capsys.readouterr()
    assert "Internal interpreter error" in captured.err
    assert "[1] Internal interpreter error" in captured.out
    assert "[0] 1" in captured.out


def test_repl_survives_failing_hook(monkeypatch, capsys, tmp_path):
    ext = tmp_path / "noisy_ext.py"
    ext.write_text(
        "def picol_register(ext):\n"
        "    @ext.on_event('after_command')\n"
        "    def _after(interpreter, argv, result):\n"
        "        if argv[0] == 'puts':\n"
        "            raise ValueError('boom')\n",
        encoding="utf-8",
    )
    feed_input(monkeypatch, ["puts hi", "set x 2"])
    assert run_cli(["--ext", str(ext)]) == 0
    captured = capsys.readouterr()
    assert "[1] Extension hook 'after_command' failed: boom" in captured.out
    assert "[0] 2" in captured.out


def test_repl_reports_unterminated_input(monkeypatch, capsys):
    feed_input(monkeypatch, ["puts {a"])
    assert run_cli([]) == 0
    assert "unterminated input discarded" in capsys.readouterr().err
