from __future__ import annotations

import argparse
import asyncio
from dataclasses import replace
import sys

from rura.config import (
    SUPPORTED_VECTOR_STORE_BACKENDS,
    Settings,
    collection_names,
    configure_logging,
    get_settings,
    parse_collections,
)
from rura.context import RagContext, build_context
from rura.llm import summarize
from rura.services.rag.sitemap import require_site_url
from rura.services.rag.types import IngestionProgress


def _build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rura",
        description="Crawl a website into a vector store and answer questions about it",
    )
    parser.add_argument(
        "-a",
        "--address",
        default=settings.qdrant_address,
        help="Vector store address (Qdrant REST URL)",
    )
    parser.add_argument(
        "-c",
        "--base-collection",
        default=settings.base_collection,
        help="Base collection name; filters are appended as <base>_<filter>",
    )
    parser.add_argument(
        "--backend",
        choices=sorted(SUPPORTED_VECTOR_STORE_BACKENDS),
        default=settings.vector_store_backend,
        help="Vector store backend",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    upload = subparsers.add_parser("upload", help="Crawl a sitemap and store its pages")
    upload.add_argument("--url", required=True, help="Website root or sitemap URL")
    upload.add_argument("--sitemap-url", default=None, help="Explicit sitemap URL")
    upload.add_argument(
        "--filter-collections",
        default=None,
        help="Comma separated filter collections to store into",
    )

    query = subparsers.add_parser("query", help="Answer a question from stored pages")
    query.add_argument("--query", required=True, help="Question to answer")
    query.add_argument("--filter-collections", default=None, help="Comma separated filter collections")
    query.add_argument("--model", default=settings.ollama_model, help="Generation model")
    query.add_argument("--limit", type=int, default=settings.rag_top_k, help="Number of passages")
    query.add_argument("--ollama-host", default=settings.ollama_host, help="Ollama host")
    query.add_argument("--ollama-port", type=int, default=settings.ollama_port, help="Ollama port")
    query.add_argument(
        "--no-stream",
        action="store_true",
        help="Wait for the whole answer instead of streaming tokens",
    )

    drop = subparsers.add_parser("drop", help="Delete collections")
    drop.add_argument(
        "--collection",
        default=None,
        help="Collection to drop (default: every configured target collection)",
    )

    summary = subparsers.add_parser("summarize", help="Summarize a single page")
    summary.add_argument("--url", required=True, help="Page URL")
    summary.add_argument("--model", default=settings.ollama_model, help="Generation model")
    return parser


def _resolve_settings(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides: dict[str, object] = {
        "qdrant_address": args.address,
        "base_collection": args.base_collection,
        "vector_store_backend": args.backend,
    }
    filters = parse_collections(getattr(args, "filter_collections", None))
    if filters:
        overrides["filter_collections"] = filters
    if args.command == "query":
        overrides["ollama_host"] = args.ollama_host
        overrides["ollama_port"] = args.ollama_port
    return replace(settings, **overrides)


async def _upload(context: RagContext, args: argparse.Namespace) -> None:
    collections = context.settings.target_collections

    def on_progress(progress: IngestionProgress) -> None:
        print(
            f"\r[rura-upload] pages {progress.processed}/{progress.discovered} "
            f"stored={progress.stored} failed={progress.failed}",
            end="",
            file=sys.stderr,
            flush=True,
        )

    summary = await context.ingestion().run(
        args.url,
        collections,
        sitemap_url=args.sitemap_url,
        on_progress=on_progress,
    )
    print(file=sys.stderr, flush=True)
    for url, reason in sorted(summary.failures.items()):
        print(f"[rura-upload] failed page {url}: {reason}", file=sys.stderr, flush=True)
    print(
        "[rura-upload] completed "
        f"pages_stored={summary.pages_stored} "
        f"pages_failed={summary.pages_failed} "
        f"chunks={summary.chunks_stored} "
        f"collections={','.join(summary.collections)} "
        f"duration_ms={summary.duration_ms}",
        flush=True,
    )


async def _query(context: RagContext, args: argparse.Namespace) -> None:
    retrieval = context.retrieval()
    collections = context.settings.target_collections

    if args.no_stream:
        answer = await retrieval.answer_blocking(args.query, collections, args.limit, args.model)
        print(answer.answer, flush=True)
        return

    async for event in retrieval.stream_answer(args.query, collections, args.limit, args.model):
        if event.kind == "token":
            print(event.text, end="", flush=True)
        elif event.kind == "interrupted":
            print(flush=True)
            print(f"[rura-query] answer interrupted: {event.reason}", file=sys.stderr, flush=True)
            return
    print(flush=True)


async def _drop(context: RagContext, args: argparse.Namespace) -> None:
    targets = [args.collection] if args.collection else context.settings.target_collections
    for name in targets:
        dropped = await context.gateway.drop(name)
        print(f"[rura-drop] {name} {'dropped' if dropped else 'not found'}", flush=True)


async def _summarize(context: RagContext, args: argparse.Namespace) -> None:
    fetcher = context.fetcher()
    page = fetcher.extract_text(await fetcher.fetch(args.url))
    print(await summarize(context.llm_client, page.text, model=args.model), flush=True)


COMMANDS = {
    "upload": _upload,
    "query": _query,
    "drop": _drop,
    "summarize": _summarize,
}


async def _run(settings: Settings, args: argparse.Namespace) -> None:
    context = build_context(settings)
    try:
        await COMMANDS[args.command](context, args)
    finally:
        await context.aclose()


def main(argv: list[str] | None = None) -> None:
    settings = get_settings()
    parser = _build_parser(settings)
    args = parser.parse_args(argv)
    configure_logging()

    try:
        if getattr(args, "filter_collections", None) is not None and not parse_collections(
            args.filter_collections
        ):
            raise ValueError("--filter-collections must name at least one collection")
        if args.command in ("upload", "summarize"):
            args.url = require_site_url(args.url)
        resolved = _resolve_settings(settings, args)
        collection_names(resolved.base_collection, resolved.filter_collections)
        asyncio.run(_run(resolved, args))
    except Exception as exc:
        print(f"[rura-{args.command}] failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
