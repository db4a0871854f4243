"""Local deterministic agent for executor and engine integration tests.

Accepts the Claude Code style flags (``-p``, ``--output-format``, ``--model``)
as well as ``--prompt-file`` for command templates, and answers with one
SEARCH/REPLACE block for ``--file``.
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path


def _emit(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


def _emit_json(event: dict) -> None:
    _emit(json.dumps(event))


def main(argv: list[str] | None = None) -> int:
    """Print a canned edit for the prompt, optionally slow or failing."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-p", "--prompt", default=None)
    parser.add_argument("--prompt-file", default=None)
    parser.add_argument("--output-format", "--format", dest="output_format", default="text")
    parser.add_argument("--model", default="echo")
    parser.add_argument("--file", default="src/app.py")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    args, _ = parser.parse_known_args(argv)

    if args.prompt is not None:
        prompt = args.prompt
    elif args.prompt_file:
        prompt = Path(args.prompt_file).read_text("utf-8")
    else:
        parser.error("Either --prompt or --prompt-file is required")
    first_line = prompt.strip().splitlines()[0] if prompt.strip() else "empty prompt"

    block = "\n".join(
        [
            args.file,
            "<<<<<<< SEARCH",
            "old line",
            "=======",
            f"new line: {first_line}",
            ">>>>>>> REPLACE",
        ],
    )
    stream_json = args.output_format == "stream-json"

    if stream_json:
        _emit_json({"type": "system", "subtype": "init", "model": args.model})
        _emit_json({"type": "assistant", "message": f"Working on: {first_line}"})
    else:
        _emit(f"Working on: {first_line}")

    if args.sleep > 0:
        time.sleep(args.sleep)

    if args.exit_code != 0:
        if stream_json:
            _emit_json({"type": "error", "message": "echo agent failed"})
        sys.stderr.write("echo agent failed\n")
        sys.stderr.flush()
        return args.exit_code

    if stream_json:
        _emit_json(
            {"type": "tool_use", "tool_name": "Edit", "tool_input": {"file_path": args.file}},
        )
        _emit_json({"type": "assistant", "message": block})
        _emit_json({"type": "result", "message": "Echo agent done", "cost_usd": 0.001})
    else:
        _emit(block)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
