"""CLI entry point for the booking auto-responder.

Chats against an in-memory tenant whose documents are loaded from local
text files, streaming replies as they are generated.  For production, use
the FastAPI server (src/server.py).

Usage:
    uv run python -m src.main --docs offers.txt            # normal mode (quiet)
    uv run python -m src.main --docs offers.txt --debug    # debug mode
"""

from __future__ import annotations

import argparse
import logging
import uuid
from pathlib import Path

from dotenv import load_dotenv

from src.models import Channel, TenantConfig
from src.services.embeddings import FastEmbedder
from src.services.memory_store import InMemoryStore

logger = logging.getLogger(__name__)

LOCAL_TENANT = "local-cli"


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("src").setLevel(logging.DEBUG if debug else logging.INFO)


def split_paragraphs(text: str) -> list[str]:
    """Split a document into blank-line separated chunks."""
    return [p.strip() for p in text.split("\n\n") if p.strip()]


def _seed_store(store: InMemoryStore, embedder: FastEmbedder, paths: list[Path], prompt: str) -> None:
    file_ids = []
    for path in paths:
        file_id = path.name
        file_ids.append(file_id)
        for chunk in split_paragraphs(path.read_text(encoding="utf-8")):
            store.add_chunk(file_id, chunk, embedder.embed(chunk))
        logger.info("Indexed %s", path)
    store.add_tenant(
        TenantConfig(
            destination_id=LOCAL_TENANT,
            file_ids=file_ids,
            system_prompt=prompt,
            channel=Channel.WEB,
        )
    )


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Booking auto-responder CLI")
    parser.add_argument(
        "--docs", nargs="+", type=Path, required=True,
        help="Text files the assistant may answer from",
    )
    parser.add_argument("--prompt", default="", help="Tenant persona / policy text")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    from src.orchestrator import create_orchestrator  # noqa: PLC0415 — needs env loaded

    store = InMemoryStore()
    embedder = FastEmbedder()
    _seed_store(store, embedder, args.docs, args.prompt)
    orchestrator = create_orchestrator(
        config_store=store, history_store=store, retriever=store, embedder=embedder,
    )

    print("\n" + "=" * 60)
    print("  Booking Auto-Responder - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session,")
    print("            'state' to show booking progress.")
    print("=" * 60 + "\n")

    session_id = str(uuid.uuid4())
    logger.info("Started new session: %s", session_id)

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye! Have a great day!")
            break

        if user_input.lower() == "new":
            session_id = str(uuid.uuid4())
            print(f"\n>> New session started: {session_id[:8]}...\n")
            continue

        if user_input.lower() == "state":
            state = store.load_state(LOCAL_TENANT, session_id)
            print(f"\n>> {state.summary() if state else 'no state yet'}\n")
            continue

        try:
            print("\nAssistant: ", end="", flush=True)
            events = orchestrator.stream_turn(
                session_id, LOCAL_TENANT, user_input, str(uuid.uuid4()), channel=Channel.WEB,
            )
            for kind, payload in events:
                if kind == "token":
                    print(payload, end="", flush=True)
                elif not payload.success:
                    print(f"\n  [turn failed: {payload.error.value if payload.error else 'unknown'}]", end="")
            print("\n")

        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break
        except Exception:
            logger.exception("Error processing message")
            print("\nSorry, something went wrong. Please try again or type 'new' to start a fresh session.\n")


if __name__ == "__main__":
    main()
