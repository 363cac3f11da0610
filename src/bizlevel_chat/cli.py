"""Interactive terminal chat with the BizLevel assistant."""

import argparse
import asyncio
from typing import List, Optional

import structlog

from .config import configure_logging, settings
from .domain.errors import ChatError, ProxyRequestError
from .domain.models import Role
from .repositories.base import DocumentStore
from .services.conversation import ConversationOrchestrator

logger = structlog.get_logger()

HELP_TEXT = "Commands: /history, /clear, /quit"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bizlevel-chat", description=__doc__)
    parser.add_argument("--user-id", required=True, help="conversation owner")
    parser.add_argument("--api-url", default=settings.chat_api_url, help="base URL of the chat API")
    parser.add_argument(
        "--storage",
        choices=("memory", "firestore"),
        default=settings.storage_backend,
        help="where chat history is kept",
    )
    parser.add_argument("--log-level", default="WARNING")
    return parser


def make_document_store(backend: str) -> DocumentStore:
    if backend == "firestore":
        from .repositories.firestore import FirestoreDocumentStore

        return FirestoreDocumentStore(project=settings.firestore_project or None)
    from .repositories.memory import InMemoryDocumentStore

    return InMemoryDocumentStore()


def _print_history(orchestrator: ConversationOrchestrator) -> None:
    messages = orchestrator.messages
    if not messages:
        print("(no messages)")
    for message in messages:
        speaker = "you" if message.role == Role.USER else "assistant"
        print(f"[{speaker}] {message.content}")


async def _confirm(prompt: str) -> bool:
    answer = await asyncio.to_thread(input, f"{prompt} [y/N] ")
    return answer.strip().lower() in ("y", "yes")


async def run(args: argparse.Namespace, transport=None) -> int:
    orchestrator = ConversationOrchestrator.from_settings(
        args.user_id,
        make_document_store(args.storage),
        settings.model_copy(update={"chat_api_url": args.api_url}),
        transport=transport,
    )
    try:
        try:
            await orchestrator.load_history()
        except ChatError as exc:
            print(f"Could not load chat history: {exc}")
        _print_history(orchestrator)
        print(HELP_TEXT)

        while True:
            try:
                text = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            command = text.strip()
            if command == "/quit":
                break
            if command == "/history":
                try:
                    await orchestrator.refresh()
                except ChatError as exc:
                    print(f"Could not load chat history: {exc}")
                    continue
                _print_history(orchestrator)
                continue
            if command == "/clear":
                if await _confirm("Delete the whole conversation?"):
                    try:
                        await orchestrator.clear_history()
                        print("Chat history cleared.")
                    except ChatError as exc:
                        print(f"Failed to clear history: {exc}")
                continue

            try:
                reply = await orchestrator.send(text)
            except ProxyRequestError as exc:
                print(f"[assistant] {exc.fallback or exc}")
                continue
            except ChatError as exc:
                print(f"Failed to send message: {exc}")
                continue
            if reply is not None:
                print(f"[assistant] {reply.content}")
    finally:
        await orchestrator.aclose()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
