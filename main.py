"""live-assist command line: run the host or inspect the local reference index."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from live_assist.config import Settings, load_settings
from live_assist.errors import AssistError
from live_assist.models import RagProgress
from live_assist.rag import LocalRagProvider

logger = logging.getLogger(__name__)


def build_local_provider(settings: Settings, folder: Optional[str] = None) -> LocalRagProvider:
    rag = settings.rag.model_copy(update={"enabled": True})
    if folder:
        rag = rag.model_copy(update={"folder": folder})
    return LocalRagProvider(rag)


def print_progress(progress: RagProgress) -> None:
    print(f"  [{progress.percent:3d}%] {progress.message}")


async def run_index(settings: Settings, folder: Optional[str]) -> int:
    provider = build_local_provider(settings, folder)
    provider.progress.subscribe(print_progress)
    provider.status.subscribe(print)
    await provider.initialize()
    index = provider.index
    if index is None:
        return 1
    sources = sorted({chunk.source for chunk in index.chunks})
    print(f"chunks: {len(index)}  terms: {len(index.idf)}  files: {len(sources)}")
    for source in sources:
        print(f"  {source}")
    return 0


async def run_query(settings: Settings, folder: Optional[str], text: str) -> int:
    provider = build_local_provider(settings, folder)
    await provider.initialize()
    payload = await provider.build_payload(text)
    if payload.is_empty:
        print("(no matching context)")
        return 1
    print(payload.context)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="live-assist: retrieval-augmented live call assistant")
    parser.add_argument("--config", help="Path to a JSON settings file", default=None)
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve_parser = commands.add_parser("serve", help="Run the websocket host")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)

    index_parser = commands.add_parser("index", help="Build the local reference index and print stats")
    index_parser.add_argument("--folder", default=None, help="Override the reference folder")

    query_parser = commands.add_parser("query", help="Print the reference context composed for a query")
    query_parser.add_argument("text")
    query_parser.add_argument("--folder", default=None, help="Override the reference folder")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(args.config)
        if args.command == "serve":
            from live_assist.server import serve

            serve(settings, host=args.host, port=args.port, log_level=args.log_level)
            return 0
        if args.command == "index":
            return asyncio.run(run_index(settings, args.folder))
        return asyncio.run(run_query(settings, args.folder, args.text))
    except AssistError as exc:
        sys.stderr.write(f"error: {exc.message}\n")
        return 2
    except KeyboardInterrupt:
        print("\nStopped.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
