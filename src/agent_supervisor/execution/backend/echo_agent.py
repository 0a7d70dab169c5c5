"""Local scripted agent emitting stream-json events for backend integration tests."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from agent_supervisor.execution.deliverables import save_deliverable

SCENARIOS = ("success", "billing", "api-error", "fatal", "crash")


def main(argv: list[str] | None = None) -> int:
    """Replay a deterministic event script for the requested scenario."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--scenario", choices=SCENARIOS, default="success")
    parser.add_argument("--deliverable", action="append", default=[])
    parser.add_argument("--turns", type=int, default=3)
    parser.add_argument("--cost", type=float, default=0.25)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8").strip()
    workspace = Path.cwd()
    _emit({"type": "system", "subtype": "init", "cwd": str(workspace)})

    if args.scenario == "crash":
        print("echo agent crashed before producing events", file=sys.stderr)
        return 2

    if args.scenario == "fatal":
        _emit({"type": "error", "error": {"message": "authentication failed: invalid api key"}})
        return 1

    if args.scenario == "billing":
        _assistant("Checking account status.")
        _emit(
            {
                "type": "result",
                "subtype": "success",
                "result": "Your spending cap has been reached and resets on Monday",
                "total_cost_usd": 0,
                "num_turns": 1,
            },
        )
        return 0

    (workspace / "agent_scratch.txt").write_text(f"working on: {prompt[:80]}\n", "utf-8")
    for turn in range(1, max(args.turns, 1) + 1):
        if args.scenario == "api-error" and turn == 1:
            _assistant("API Error: 529 overloaded, continuing with cached context.")
            continue
        _assistant(f"Turn {turn}: working on the task.", tool="save_deliverable")

    for filename in args.deliverable:
        save_deliverable(workspace, filename, f"# {filename}\n\n{prompt}\n")

    _emit(
        {
            "type": "result",
            "subtype": "success",
            "result": f"Completed: {prompt[:200]}",
            "total_cost_usd": args.cost,
            "num_turns": args.turns,
        },
    )
    return 0


def _assistant(text: str, *, tool: str | None = None) -> None:
    content: list[dict[str, object]] = [{"type": "text", "text": text}]
    if tool is not None:
        content.append({"type": "tool_use", "name": tool, "input": {}})
    _emit({"type": "assistant", "message": {"content": content}})


def _emit(payload: dict[str, object]) -> None:
    print(json.dumps(payload), flush=True)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
