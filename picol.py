"""Picol entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import PicolExtensionError, RuntimeServices, load_runtime_services
from interpreter import Interpreter, Outcome, PicolRuntimeError, TracebackFormatter
from lexer import PicolParseError, script_is_complete


PROMPT = "picol> "
CONTINUATION_PROMPT = "  ...> "


def _read_source(filename: str) -> str:
    try:
        with open(filename, "r", encoding="utf-8") as handle:
            return handle.read()
    except UnicodeDecodeError as exc:
        raise PicolParseError(f"{filename} is not valid UTF-8: {exc}") from exc


def _report_repl_error(formatter: TracebackFormatter, error: PicolRuntimeError, verbose: bool) -> None:
    print(formatter.format_text(error, verbose=verbose), file=sys.stderr)
    print(f"[{int(Outcome.ERROR)}] {error.message}")


def run_repl(verbose: bool, services: Optional[RuntimeServices] = None) -> int:
    print("Picol REPL. Ctrl-D to exit.")
    interpreter = Interpreter(filename="<repl>", verbose=verbose, services=services)
    formatter = TracebackFormatter(interpreter)
    buffer: List[str] = []

    while True:
        try:
            line = input(PROMPT if not buffer else CONTINUATION_PROMPT)
        except EOFError:
            print()
            if buffer:
                print("ParseError: unterminated input discarded", file=sys.stderr)
            break

        buffer.append(line)
        source_text = "\n".join(buffer)
        # Keep reading while a brace, bracket or quote is still open.
        if not script_is_complete(source_text):
            continue
        buffer.clear()

        try:
            code, value = interpreter.evaluate(source_text)
        except PicolRuntimeError as error:
            _report_repl_error(formatter, error, verbose)
        except Exception as exc:
            # RecursionError from a runaway procedure lands here too.
            _report_repl_error(formatter, interpreter.internal_error(exc), verbose)
        else:
            if code is Outcome.ERROR and interpreter.last_error is not None:
                print(formatter.format_text(interpreter.last_error, verbose=verbose), file=sys.stderr)
            if value:
                print(f"[{int(code)}] {value}")
        finally:
            # Keep the REPL usable with the top-level frame only.
            del interpreter.call_stack[1:]

    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Picol interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit variable snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--ext", dest="extensions", action="append", default=[], metavar="PATH", help="Load an extension module or .picx pointer file (repeatable)")
    args = parser.parse_args(argv)

    services: Optional[RuntimeServices] = None
    if args.extensions:
        try:
            services = load_runtime_services(args.extensions)
        except PicolExtensionError as error:
            print(f"ExtensionError: {error}", file=sys.stderr)
            return 1

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, services=services)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            source_text = _read_source(filename)
        except PicolParseError as error:
            print(f"ParseError: {error}", file=sys.stderr)
            return 1
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    try:
        interpreter = Interpreter(source=source_text, filename=filename, verbose=args.verbose, services=services)
    except PicolExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1
    try:
        interpreter.run()
    except PicolRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
