"""CLI entry point: chat with a flow from the terminal.

This provides a simple terminal-based channel adapter for testing flows
during authoring.  For production, use the FastAPI server
(intakeflow/server.py).

Usage:
    intakeflow-chat                         # latest version of the first flow
    intakeflow-chat --flow lawn_intake@1.0  # a specific version
    intakeflow-chat --debug                 # show engine logs
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import uuid

from intakeflow.config import Settings
from intakeflow.conversation import ConversationService, build_service
from intakeflow.engine.session import SessionStatus
from intakeflow.errors import IntakeFlowError

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("intakeflow").setLevel(logging.DEBUG if debug else logging.WARNING)


def _print_reply(messages: list[str]) -> None:
    for message in messages:
        print(f"\nBot: {message}")
    print()


async def _chat(service: ConversationService, flow_version: str, contact: str | None) -> None:
    session_id = str(uuid.uuid4())
    reply = await service.advance(flow_version, session_id, contact=contact)
    _print_reply(reply.messages)

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye!")
            break

        if user_input.lower() == "new":
            session_id = str(uuid.uuid4())
            print(f"\n>> New session started: {session_id[:8]}...")
            reply = await service.advance(flow_version, session_id, contact=contact)
            _print_reply(reply.messages)
            continue

        try:
            reply = await service.advance(flow_version, session_id, user_input)
        except IntakeFlowError as e:
            logger.exception("Error processing message")
            print(f"\nBot: Something went wrong: {e}")
            print("     Type 'new' to start a fresh session.\n")
            continue

        _print_reply(reply.messages)
        if reply.status is not SessionStatus.ACTIVE:
            print(f">> Session {reply.status}. Type 'new' to start over or 'quit' to exit.\n")


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="IntakeFlow terminal chat")
    parser.add_argument("--flow", help="Flow key ('id' or 'id@version'); default: first registered")
    parser.add_argument("--contact", help="Contact identifier recorded on the session")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including engine decisions",
    )
    args = parser.parse_args()

    _configure_logging(debug=args.debug)
    settings = Settings.from_env()
    service = build_service(settings)

    versions = service.registry.versions()
    if not versions:
        print(f"No flows found in {settings.flows_dir}")
        return
    flow_version = args.flow or versions[0]

    print("\n" + "=" * 60)
    print(f"  IntakeFlow - {flow_version}")
    print("=" * 60)
    print("  Type your answer and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session.")
    print("=" * 60)

    try:
        asyncio.run(_chat(service, flow_version, args.contact))
    finally:
        service.close()


if __name__ == "__main__":
    main()
