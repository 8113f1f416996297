#!/usr/bin/env python3
"""
Command-line interface for pagebinder.

Usage:
    # Convert a directory of page photos locally
    pagebinder process ./photos --title "My Book" --author "Author Name"

    # Run the job control server for capturing clients
    pagebinder serve --port 8787

    # Upload a directory of page photos to a running server
    pagebinder submit ./photos --title "My Book" --server http://127.0.0.1:8787

    # Store the API key and a custom extraction prompt
    pagebinder settings --api-key sk-... --prompt-file prompt.txt
"""

import argparse
import asyncio
import logging
import sys
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_pages(args: argparse.Namespace):
    from .preprocessor import PageLoader

    input_dir = Path(args.input)
    if not input_dir.is_dir():
        print(f"Input directory not found: {input_dir}", file=sys.stderr)
        return None

    loader = PageLoader(max_edge=args.max_edge)
    pages = loader.load_directory(input_dir, sort_by_timestamp=not args.sort_by_name)
    if not pages:
        print("No images found", file=sys.stderr)
        return None
    return pages


def cmd_process(args: argparse.Namespace) -> int:
    """Convert page images to an EPUB locally."""
    from .config import PipelineConfig, SettingsStore
    from .extraction import ExtractionClient
    from .orchestrator import ConversionPipeline, ConversionRequest, FileDelivery
    from .progress import TerminalNotifier

    settings = SettingsStore(args.settings).load()
    if not settings.has_credential:
        print("No API key configured; run `pagebinder settings --api-key ...`", file=sys.stderr)
        return 1

    pages = _load_pages(args)
    if pages is None:
        return 1

    config = PipelineConfig.from_env(output_dir=Path(args.output), language=args.language)
    request = ConversionRequest(
        job_id=str(uuid.uuid4()),
        title=args.title,
        author=args.author,
        pages=pages,
    )

    async def run():
        async with ExtractionClient(
            api_key=settings.api_key,
            api_url=config.api_url,
            model=config.model,
            max_tokens=config.max_tokens,
            timeout=config.request_timeout,
        ) as client:
            pipeline = ConversionPipeline(
                config,
                settings,
                client.extract,
                deliver=FileDelivery(config.output_dir),
                notifier=TerminalNotifier(desc="Extracting"),
            )
            return await pipeline.run(request)

    result = asyncio.run(run())

    if result.success:
        print(f"\n✓ Success: {result.message}")
        print(f"  EPUB: {config.output_dir / result.filename}")
        if result.failed_pages:
            print(f"\n⚠ {len(result.failed_pages)} pages could not be extracted: {result.failed_pages}")
        return 0
    else:
        print(f"\n✗ Failed: {result.message}", file=sys.stderr)
        return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the job control server."""
    from .config import PipelineConfig
    from .server import serve

    config = PipelineConfig.from_env(output_dir=Path(args.output))
    serve(host=args.host, port=args.port, config=config)
    return 0


def cmd_submit(args: argparse.Namespace) -> int:
    """Upload pages to a server and wait for the EPUB."""
    from .client import JobClient, JobClientError

    pages = _load_pages(args)
    if pages is None:
        return 1

    async def run():
        async with JobClient(args.server) as client:
            job_id = await client.upload_book(pages, args.title, args.author, chunk_size=args.chunk_size)
            await client.start(job_id)
            print(f"Started job {job_id} ({len(pages)} pages)")

            while True:
                for event in await client.poll_events():
                    if event["job_id"] != job_id:
                        continue
                    if event["type"] == "progress":
                        status = "ok" if event["ok"] else "failed"
                        print(f"  page {event['current']}/{event['total']}: {status}")
                    elif event["type"] == "complete":
                        await client.close_events()
                        return event
                await asyncio.sleep(args.poll_interval)

    try:
        event = asyncio.run(run())
    except JobClientError as e:
        print(f"\n✗ Failed: {e}", file=sys.stderr)
        return 1

    if event["success"]:
        print(f"\n✓ EPUB ready: {args.server.rstrip('/')}/downloads/{event['filename']}")
        return 0
    else:
        print(f"\n✗ Failed: {event['error']}", file=sys.stderr)
        return 1


def cmd_settings(args: argparse.Namespace) -> int:
    """Show or update stored settings."""
    from .config import SettingsStore

    store = SettingsStore(args.settings)
    settings = store.load(include_env=False)
    changed = False

    if args.api_key is not None:
        settings.api_key = args.api_key.strip()
        changed = True
    if args.prompt_file:
        settings.analysis_prompt = Path(args.prompt_file).read_text(encoding="utf-8").strip()
        changed = True
    if args.reset_prompt:
        settings.analysis_prompt = ""
        changed = True

    if changed:
        store.save(settings)
        print(f"✓ Settings saved to {store.path}")

    if args.show or not changed:
        effective = store.load()
        print(f"API key: {'configured' if effective.has_credential else 'not set'}")
        print(f"Prompt: {'custom' if settings.analysis_prompt else 'default'}")
        if args.show:
            print()
            print(effective.prompt)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="pagebinder",
        description="Convert photographed book pages to EPUB",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--settings", help="Settings file (default: ~/.config/pagebinder/settings.json)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # process command (local conversion)
    p_process = subparsers.add_parser(
        "process",
        help="Convert page images to EPUB",
        description="Extract text from photos of book pages and build an EPUB",
    )
    p_process.add_argument("input", help="Input directory with images")
    p_process.add_argument("-o", "--output", default="./output", help="Output directory")
    p_process.add_argument("-t", "--title", required=True, help="Book title")
    p_process.add_argument("-a", "--author", default="", help="Book author")
    p_process.add_argument("-l", "--language", default="en", help="Language code (en, es, zh, etc.)")
    p_process.add_argument("--sort-by-name", action="store_true", help="Sort by filename instead of timestamp")
    p_process.add_argument("--max-edge", type=int, default=0,
                           help="Downscale images whose long edge exceeds this (0 to disable)")
    p_process.set_defaults(func=cmd_process)

    # serve command
    p_serve = subparsers.add_parser("serve", help="Run the job control server")
    p_serve.add_argument("--host", default="127.0.0.1", help="Bind address")
    p_serve.add_argument("--port", type=int, default=8787, help="Port")
    p_serve.add_argument("-o", "--output", default="./output", help="Directory for finished EPUBs")
    p_serve.set_defaults(func=cmd_serve)

    # submit command
    p_submit = subparsers.add_parser("submit", help="Upload page images to a running server")
    p_submit.add_argument("input", help="Input directory with images")
    p_submit.add_argument("-t", "--title", required=True, help="Book title")
    p_submit.add_argument("-a", "--author", default="", help="Book author")
    p_submit.add_argument("--server", default="http://127.0.0.1:8787", help="Server URL")
    p_submit.add_argument("--chunk-size", type=int, default=5, help="Pages per upload chunk")
    p_submit.add_argument("--poll-interval", type=float, default=1.0, help="Seconds between event polls")
    p_submit.add_argument("--sort-by-name", action="store_true", help="Sort by filename instead of timestamp")
    p_submit.add_argument("--max-edge", type=int, default=0,
                          help="Downscale images whose long edge exceeds this (0 to disable)")
    p_submit.set_defaults(func=cmd_submit)

    # settings command
    p_settings = subparsers.add_parser("settings", help="Show or update stored settings")
    p_settings.add_argument("--api-key", help="API key for the extraction service")
    p_settings.add_argument("--prompt-file", help="File containing a custom extraction prompt")
    p_settings.add_argument("--reset-prompt", action="store_true", help="Revert to the default prompt")
    p_settings.add_argument("--show", action="store_true", help="Print the effective prompt")
    p_settings.set_defaults(func=cmd_settings)

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
