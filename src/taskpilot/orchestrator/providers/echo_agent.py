"""Local scripted agent for CLI provider integration tests.

Reads the prompt from stdin, then follows ``TASKPILOT_ECHO_SCRIPT``: a
``;``-separated list of actions applied in the working directory.

- ``write:<path>=<text>`` writes a file
- ``say:<text>`` prints text to stdout
- ``stderr:<text>`` prints text to stderr
- ``exit:<code>`` sets the exit code
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

SCRIPT_ENV = "TASKPILOT_ECHO_SCRIPT"


def main(argv: list[str] | None = None) -> int:
    """Run the scripted actions and echo the prompt size."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--print", action="store_true", dest="print_mode")
    parser.add_argument("--continue", action="store_true", dest="continue_session")
    parser.add_argument("--dangerously-skip-permissions", action="store_true")
    parser.add_argument("--model", default=None)
    parser.add_argument("--version", action="store_true")
    args, _ = parser.parse_known_args(argv)

    if args.version:
        print("echo-agent 1.0")
        return 0

    prompt = sys.stdin.read()
    print(f"received {len(prompt)} chars (continue={args.continue_session})")

    exit_code = 0
    for action in filter(None, (part.strip() for part in os.getenv(SCRIPT_ENV, "").split(";"))):
        kind, _, value = action.partition(":")
        if kind == "write":
            path, _, text = value.partition("=")
            target = Path.cwd() / path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text + "\n", "utf-8")
        elif kind == "say":
            print(value)
        elif kind == "stderr":
            print(value, file=sys.stderr)
        elif kind == "exit":
            exit_code = int(value)
    return exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
