"""Scriptable stand-in for the service and worker programs in integration tests."""

from __future__ import annotations

import argparse
import subprocess
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Print the requested lines, then exit or hold."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--line", action="append", default=[], help="Line to print on stdout.")
    parser.add_argument("--stderr-line", action="append", default=[], help="Line for stderr.")
    parser.add_argument("--handoff", type=Path, default=None, help="Echo the handoff file.")
    parser.add_argument("--delay", type=float, default=0.0, help="Pause between lines.")
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--hold", action="store_true", help="Keep running after output.")
    parser.add_argument("--spawn-child", action="store_true", help="Start a sleeping child.")
    parser.add_argument("--pid-file", type=Path, default=None, help="Write child PID here.")
    args = parser.parse_args(argv)

    if args.spawn_child:
        child = subprocess.Popen(  # noqa: S603
            [sys.executable, "-c", "import time; time.sleep(600)"],
        )
        if args.pid_file is not None:
            args.pid_file.write_text(str(child.pid), "utf-8")

    if args.handoff is not None:
        task_id = args.handoff.read_text("utf-8").strip() if args.handoff.exists() else ""
        _emit(f"Processing {task_id or '<empty>'}", stream=sys.stdout)

    for text in args.stderr_line:
        _emit(text, stream=sys.stderr)
    for text in args.line:
        if args.delay:
            time.sleep(args.delay)
        _emit(text, stream=sys.stdout)

    if args.hold:
        while True:
            time.sleep(1)
    return args.exit_code


def _emit(text: str, *, stream) -> None:
    stream.write(f"{text}\n")
    stream.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
