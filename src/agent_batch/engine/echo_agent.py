"""Local stand-in for the worker tool, used by integration tests and dry runs.

Speaks the same command line (``--backend <name> -``) and stdio contract as the
real tool. Input lines starting with ``#agent:`` are executed in order as
directives; every other line is echoed to stdout once all directives ran:

- ``#agent:print=TEXT`` / ``#agent:eprint=TEXT``: write a line to stdout/stderr
- ``#agent:sleep=SECONDS``: pause
- ``#agent:exit=CODE``: stop immediately with CODE
- ``#agent:session=TOKEN``: session id announced on stderr (default ``echo-session``)
- ``#agent:no-session``: do not announce a session id
- ``#agent:report``: print a JSON report of backend, timeout env and cwd
- ``#agent:fail-first=N:PATH``: exit 1 while the attempt counter in PATH is <= N
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path
from typing import TextIO

DIRECTIVE_PREFIX = "#agent:"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--backend", default="codex")
    parser.add_argument("source", nargs="?", default="-")
    args = parser.parse_args(argv)

    text = sys.stdin.read() if args.source == "-" else Path(args.source).read_text("utf-8")
    lines = text.splitlines()
    directives = [
        line[len(DIRECTIVE_PREFIX) :] for line in lines if line.startswith(DIRECTIVE_PREFIX)
    ]
    body = "\n".join(line for line in lines if not line.startswith(DIRECTIVE_PREFIX))

    if "no-session" not in directives:
        session = next(
            (d.partition("=")[2] for d in directives if d.startswith("session=")),
            "echo-session",
        )
        _emit(sys.stderr, f"SESSION_ID: {session}")

    for directive in directives:
        name, _, value = directive.partition("=")
        if name == "print":
            _emit(sys.stdout, value)
        elif name == "eprint":
            _emit(sys.stderr, value)
        elif name == "sleep":
            time.sleep(float(value))
        elif name == "exit":
            return int(value)
        elif name == "report":
            report = {
                "backend": args.backend,
                "timeout_ms": os.getenv("CODEX_TIMEOUT"),
                "cwd": str(Path.cwd()),
            }
            _emit(sys.stdout, json.dumps(report))
        elif name == "fail-first":
            limit, _, counter_path = value.partition(":")
            if _bump_counter(Path(counter_path)) <= int(limit):
                _emit(sys.stderr, "transient failure")
                return 1

    if body.strip():
        _emit(sys.stdout, body)
    return 0


def _emit(stream: TextIO, line: str) -> None:
    stream.write(line + "\n")
    stream.flush()


def _bump_counter(path: Path) -> int:
    count = int(path.read_text("utf-8")) if path.exists() else 0
    count += 1
    path.write_text(str(count), "utf-8")
    return count


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
