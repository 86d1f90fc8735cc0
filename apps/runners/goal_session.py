#!/usr/bin/env python3
"""
Run one goal-driven session against a local Ollama server.
"""

from __future__ import annotations

import argparse
import sys

from inkpilot import Config, LLMConfig, SessionStatus, TurnResult, create_agent


def _print_turn(result: TurnResult) -> None:
    print(f"\n--- iteration {result.iteration_count}/{result.max_iterations} • {result.status.value} ---")
    if result.message is not None and result.message.content:
        print(result.message.content)
    for call in result.tool_calls:
        print(f"[tool] {call.name}({call.arguments}) -> {call.result[:200]}")
    if result.warning:
        print(f"[warning] {result.warning}")
    if result.history_compaction is not None:
        print(
            f"[history] summarized {result.history_compaction.messages_summarized} message(s), "
            f"kept {result.history_compaction.messages_kept}"
        )


def main(argv: list[str] | None = None) -> int:
    defaults = LLMConfig()
    parser = argparse.ArgumentParser(description="Drive a tool-calling session toward a goal.")
    parser.add_argument("goal", help="What the session should accomplish")
    parser.add_argument("--url", default=defaults.base_url, help="Ollama base URL")
    parser.add_argument("--model", default=defaults.model, help="Model name")
    parser.add_argument("--max-iterations", type=int, default=Config().max_iterations)
    parser.add_argument("--max-turns", type=int, default=20, help="Stop after this many continue calls")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args(argv)

    agent = create_agent(
        args.url,
        args.model,
        config_overrides={"max_iterations": args.max_iterations, "log_level": args.log_level},
    )
    agent.subscribe(_print_turn)

    conn = agent.check_connection()
    if not conn.success:
        print(f"Cannot reach Ollama at {args.url}: {conn.error}", file=sys.stderr)
        return 2
    if conn.models and args.model not in conn.models and f"{args.model}:latest" not in conn.models:
        print(f"Model {args.model!r} not found. Available: {', '.join(conn.models)}", file=sys.stderr)

    session_id = agent.start_session(args.goal)
    print(f"Session {session_id} started")
    print("=" * 60)

    result = agent.continue_turn(session_id)
    turns = 1
    while result.status is SessionStatus.ACTIVE and turns < args.max_turns:
        if result.awaiting_user_response:
            try:
                answer = input(f"\n{result.user_question or 'The assistant is waiting for you'}\n> ")
            except EOFError:
                break
            result = agent.send_user_message(session_id, answer)
        else:
            result = agent.continue_turn(session_id)
        turns += 1

    print("\n" + "=" * 60)
    print(f"Final status: {result.status.value}")
    if result.completion_summary:
        print(f"Summary: {result.completion_summary}")
    if result.error:
        print(f"Error: {result.error}")
    return 0 if result.status is SessionStatus.COMPLETED else 1


if __name__ == "__main__":
    sys.exit(main())
