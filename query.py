"""Ask the assistant one question from the command line.

Runs a full turn (retrieval, confidence scoring, strategy selection and
answer generation) against the configured stores and prints the reply with
its strategy, confidence and citations.
"""

from __future__ import annotations

import argparse
import sys

from dotenv import load_dotenv

from kbchat.core.errors import AssistantError
from kbchat.dependencies import ServiceContainer


def _echo(message: str) -> None:
    sys.stdout.write(f"{message}\n")


def main(argv: list[str] | None = None, container: ServiceContainer | None = None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Ask the help-center assistant")
    parser.add_argument("--q", type=str, required=True, help="Question")
    parser.add_argument("--session", default=None, help="Continue an existing session")
    parser.add_argument(
        "--show-passages",
        action="store_true",
        help="Also print the retrieved passages with their similarity",
    )
    args = parser.parse_args(argv)

    if container is None:
        container = ServiceContainer.from_settings()
    container.startup()
    try:
        if args.show_passages:
            retrieval = container.retriever.retrieve(args.q)
            _echo(f"Top {len(retrieval.passages)} passages for: {args.q!r}\n")
            for i, passage in enumerate(retrieval.passages, 1):
                _echo(f"[{i}] {passage.title}  (similarity={passage.similarity:.4f})")
                preview = passage.content.strip().replace("\n", " ")
                preview = (preview[:600] + "…") if len(preview) > 600 else preview
                _echo(preview)
                _echo("-" * 80)

        result = container.orchestrator.submit_turn(args.q, session_id=args.session)
    except AssistantError as exc:
        _echo(f"Error: {exc.user_message}")
        return 1
    finally:
        container.shutdown()

    _echo("=" * 80)
    _echo("Answer:")
    _echo(result.response)
    _echo("=" * 80)
    _echo(f"Session:    {result.session_id}")
    _echo(f"Strategy:   {result.strategy.value}")
    _echo(f"Confidence: {result.confidence:.0%}")
    if result.reason:
        _echo(f"Reason:     {result.reason}")
    for i, citation in enumerate(result.citations, 1):
        _echo(f"[{i}] {citation.title} {citation.url or ''}".rstrip())
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI execution
    sys.exit(main())
