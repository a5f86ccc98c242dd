"""Local stand-in for the `claude` CLI used by executor integration tests.

Accepts the same flags as `claude --print --output-format stream-json` and echoes
the message back as a stream of events. Behaviour knobs come from environment:

- `AGENT_CONTROLLER_ECHO_EXIT_CODE`: exit with this code after printing an error.
- `AGENT_CONTROLLER_ECHO_SLEEP`: seconds to stay silent before answering.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time


def _emit(payload: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


def main(argv: list[str] | None = None) -> int:
    """Run deterministic echo generation."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--print", action="store_true", dest="print_mode")
    parser.add_argument("--output-format", default="text")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--dangerously-skip-permissions", action="store_true")
    parser.add_argument("--append-system-prompt", default=None)
    parser.add_argument("--model", default="echo")
    parser.add_argument("message")
    args = parser.parse_args(argv)

    sleep_seconds = float(os.getenv("AGENT_CONTROLLER_ECHO_SLEEP", "0") or 0)
    if sleep_seconds > 0:
        time.sleep(sleep_seconds)

    exit_code = int(os.getenv("AGENT_CONTROLLER_ECHO_EXIT_CODE", "0") or 0)
    if exit_code:
        sys.stderr.write(f"echo agent failure for: {args.message[:80]}\n")
        return exit_code

    _emit({"type": "system", "subtype": "init", "model": args.model})
    _emit(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {
                        "type": "tool_use",
                        "name": "Bash",
                        "input": {"command": "echo", "description": "Echo task prompt"},
                    },
                ],
            },
        },
    )
    _emit({"type": "user", "tool_use_result": {"stdout": args.message[:100], "stderr": ""}})
    _emit({"type": "assistant", "message": {"content": [{"type": "text", "text": args.message}]}})
    _emit(
        {
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "result": args.message,
            "duration_ms": 1,
            "num_turns": 1,
            "total_cost_usd": 0.0,
            "usage": {
                "input_tokens": len(args.message.split()),
                "output_tokens": len(args.message.split()),
                "cache_read_input_tokens": 0,
                "cache_creation_input_tokens": 0,
            },
            "modelUsage": {args.model: {"contextWindow": 200000}},
        },
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
