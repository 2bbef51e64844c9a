"""Local interactive demo agent for instance and end-to-end tests.

Reads one command per line from stdin:

- ``ask <topic>`` prints a ``(y/n)`` prompt without a newline and waits for the answer;
- ``hang`` prints nothing and keeps waiting for the next command;
- ``fail`` reports an error on stderr;
- ``exit <code>`` terminates with that code;
- anything else is echoed back followed by ``Done.``.
"""

from __future__ import annotations

import argparse
import sys
import time


def _say(text: str, *, end: str = "\n") -> None:
    sys.stdout.write(text + end)
    sys.stdout.flush()


def main(argv: list[str] | None = None) -> int:
    """Run the line-oriented agent loop until stdin closes or ``exit`` is received."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--ready-text", default="Ready")
    parser.add_argument("--startup-delay", type=float, default=0.0)
    args = parser.parse_args(argv)

    if args.startup_delay > 0:
        time.sleep(args.startup_delay)
    _say(args.ready_text)

    for raw in sys.stdin:
        command = raw.strip()
        if not command:
            continue
        verb, _, rest = command.partition(" ")
        if verb == "ask":
            _say(f"Proceed with {rest or 'the change'}? (y/n) ", end="")
            answer = sys.stdin.readline()
            if not answer:
                return 0
            _say(f"Answer: {answer.strip()}")
            _say("Done.")
        elif verb == "hang":
            continue
        elif verb == "fail":
            sys.stderr.write(f"Error: simulated failure {rest}".rstrip() + "\n")
            sys.stderr.flush()
        elif verb == "exit":
            return int(rest or "0")
        else:
            _say(f"Working on: {command}")
            _say("Done.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
