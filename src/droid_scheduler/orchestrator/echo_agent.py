"""Local stand-in for the ``droid`` executable used by integration tests.

Accepts the same ``exec`` arguments and prints a short stream-json session.
Directives embedded in the prompt steer the run: ``sleep:<seconds>`` delays
the final result, ``exit:<code>`` sets the exit status, ``repeat:<n>`` adds n
numbered assistant lines, ``linger:<seconds>`` leaves a background child
holding stdout and stderr open after exit and ``ignore-term`` makes the
process ignore SIGTERM.
"""

from __future__ import annotations

import argparse
import json
import os
import re
import signal
import subprocess
import sys
import time

_DIRECTIVE_RE = re.compile(r"\b(exit|sleep|repeat|linger):(\d+(?:\.\d+)?)")


def main(argv: list[str] | None = None) -> int:
    """Emit a deterministic session for the given prompt."""

    parser = argparse.ArgumentParser(prog="echo-droid")
    parser.add_argument("command", choices=["exec"])
    parser.add_argument("--output-format", default="stream-json")
    parser.add_argument("--auto", default="medium")
    parser.add_argument("--cwd", default=None)
    parser.add_argument("--model", default=None)
    parser.add_argument("--droid", default=None)
    parser.add_argument("--enabled-tools", default=None)
    parser.add_argument("--disabled-tools", default=None)
    parser.add_argument("prompt")
    args = parser.parse_args(argv)

    directives = dict(_DIRECTIVE_RE.findall(args.prompt))
    if "ignore-term" in args.prompt:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    _emit({"type": "init", "session_id": f"echo-{os.getpid()}"})
    _emit({"type": "assistant", "text": args.prompt})
    _emit(
        {
            "type": "assistant",
            "text": (
                f"droid={args.droid or '-'} model={args.model} auto={args.auto} "
                f"cwd={args.cwd or os.getcwd()}"
            ),
        },
    )
    for index in range(int(float(directives.get("repeat", "0")))):
        _emit({"type": "assistant", "text": f"line {index}"})
    _emit({"type": "tool_use", "name": "Read"})
    print("plain text from echo agent", flush=True)
    print("echo agent diagnostics", file=sys.stderr, flush=True)

    if "linger" in directives:
        subprocess.Popen(  # noqa: S603
            [sys.executable, "-c", f"import time; time.sleep({float(directives['linger'])})"],
        )

    if "sleep" in directives:
        time.sleep(float(directives["sleep"]))

    _emit(
        {
            "type": "result",
            "usage": {"input_tokens": len(args.prompt), "output_tokens": 7},
        },
    )
    return int(float(directives.get("exit", "0")))


def _emit(payload: dict[str, object]) -> None:
    print(json.dumps(payload), flush=True)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
