"""Stack language entry point and REPL wiring."""
from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import ExtensionError, load_runtime_services
from interpreter import MODE_DEBUG, MODE_SCRIPT, ExitSignal, Interpreter, StackRuntimeError


TITLE = "Stack Programming Language: Image Edition"


def run_repl(interpreter: Interpreter) -> int:
    print(TITLE)
    while True:
        # A buffer runs once an empty line is entered.
        buffer: List[str] = []
        while True:
            try:
                line = input("> ").strip()
            except EOFError:
                print()
                return 0
            buffer.append(line)
            if not line:
                break

        try:
            interpreter.evaluate_program("\n".join(buffer))
        except ExitSignal as sig:
            return sig.code
        except StackRuntimeError as error:
            print(f"Error! {error.message}", file=sys.stderr)


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Stack programming language interpreter")
    parser.add_argument("program", nargs="?", metavar="FILE", help="Script file to execute")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--ext",
        dest="extensions",
        action="append",
        default=[],
        metavar="PATH",
        help="Load an extension module (.py) or pointer file (.stkx); repeatable",
    )
    parser.add_argument("script_args", nargs=argparse.REMAINDER, help="Arguments exposed through args-cmd")
    args = parser.parse_args(argv)

    try:
        services = load_runtime_services(args.extensions)
    except ExtensionError as error:
        print(f"Error! {error}", file=sys.stderr)
        return 1

    if args.program is None:
        return run_repl(Interpreter(mode=MODE_DEBUG, services=services, argv=[sys.argv[0]]))

    try:
        with open(args.program, "r", encoding="utf-8") as handle:
            source_text = handle.read()
    except (OSError, UnicodeDecodeError) as exc:
        print(f"Error! {exc}", file=sys.stderr)
        return 1

    interpreter = Interpreter(
        mode=MODE_DEBUG if args.debug else MODE_SCRIPT,
        services=services,
        argv=[args.program, *args.script_args],
    )
    try:
        interpreter.evaluate_program(source_text)
    except ExitSignal as sig:
        return sig.code
    except StackRuntimeError as error:
        print(f"Error! {error.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
