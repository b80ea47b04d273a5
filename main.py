#!/usr/bin/env python3
"""
Main entry point for the image crawler.
"""

import asyncio
import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import yaml

from imgcrawler import __version__
from imgcrawler.crawler.scheduler import CrawlSession
from imgcrawler.crawler.url_frontier import validate_url
from imgcrawler.exceptions import CrawlerError, InvalidUrlError
from imgcrawler.utils.config import load_config, Config
from imgcrawler.utils.logger import setup_logging, log_system_info


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


class CrawlerApp:
    """Main application class for the image crawler."""

    def __init__(self):
        self.session: Optional[CrawlSession] = None
        self.logger = logging.getLogger(__name__)
        self.interrupted = False

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}, initiating shutdown...")
            self.interrupted = True
            if self.session:
                self.session.stop()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                pass

    async def run(self, config: Config, start_url: str, max_pages: Optional[int] = None,
                  max_duration: Optional[float] = None, fresh: bool = False) -> int:
        """Run the image crawler."""
        self.setup_signal_handlers()

        self.logger.info("=== IMAGE CRAWLER STARTING ===")
        self.logger.info(f"Start URL: {start_url}")
        self.logger.info(f"Max depth: {config.crawler.max_depth}")
        self.logger.info(f"Workers: {config.crawler.concurrency}")
        self.logger.info(f"Max concurrent requests: {config.crawler.max_concurrent_requests}")
        self.logger.info(f"Min request interval: {config.crawler.min_request_interval}s")
        self.logger.info(f"Output directory: {config.storage.output_dir}")

        try:
            self.session = CrawlSession(config)
            if fresh:
                await self.session.index.reset()
            await self.session.start()
            await self.session.run(start_url, max_pages=max_pages, max_duration=max_duration)

        except CrawlerError as e:
            self.logger.error(f"Fatal error: {e}")
            return EXIT_ERROR

        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return EXIT_ERROR

        finally:
            if self.session:
                await self.session.close()
            self.logger.info("=== IMAGE CRAWLER FINISHED ===")

        return EXIT_INTERRUPTED if self.interrupted else EXIT_OK


def positive_int(value: str) -> int:
    """argparse type for strictly positive integers."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value!r}")
    return number


def positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"must be a positive number, got {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive number, got {value!r}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='imgcrawler',
        description="Crawl a website and index the images it contains",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  imgcrawler https://example.com 2                   # Crawl two levels deep
  imgcrawler https://example.com 3 --concurrency 1   # Strict breadth-first index order
  imgcrawler https://example.com 2 --no-download     # Build the index only
  imgcrawler https://example.com 2 --config crawl.yaml
        """
    )

    parser.add_argument('start_url', help='URL to start crawling from')
    parser.add_argument('depth', type=positive_int, help='Maximum crawl depth (the start page is depth 1)')

    parser.add_argument(
        '--config',
        help='Path to a YAML configuration file'
    )
    parser.add_argument(
        '--concurrency',
        type=positive_int,
        help='Number of crawl workers (default: 5)'
    )
    parser.add_argument(
        '--output-dir',
        help='Directory for index.json and downloaded images (default: images)'
    )
    parser.add_argument(
        '--max-pages',
        type=positive_int,
        help='Maximum number of pages to crawl'
    )
    parser.add_argument(
        '--max-duration',
        type=positive_float,
        help='Maximum crawl duration in seconds'
    )
    parser.add_argument(
        '--no-render',
        action='store_true',
        help='Never fall back to headless browser rendering'
    )
    parser.add_argument(
        '--no-download',
        action='store_true',
        help='Record images in the index without downloading them'
    )
    parser.add_argument(
        '--fresh',
        action='store_true',
        help='Start a new index instead of appending to an existing one'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level'
    )
    parser.add_argument(
        '--json-logs',
        action='store_true',
        help='Emit JSON formatted log lines'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'imgcrawler {__version__}'
    )
    return parser


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Apply command line options on top of the file configuration."""
    config.crawler.max_depth = args.depth
    if args.concurrency is not None:
        config.crawler.concurrency = args.concurrency
    if args.output_dir is not None:
        config.storage.output_dir = args.output_dir
    if args.no_render:
        config.crawler.render_fallback = False
    if args.no_download:
        config.storage.download_images = False
    if args.log_level is not None:
        config.logging.level = args.log_level
    config.validate()
    return config


def main(argv=None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        start_url = validate_url(args.start_url)
    except InvalidUrlError as e:
        parser.print_usage(sys.stderr)
        print(f"{parser.prog}: error: {e}", file=sys.stderr)
        return EXIT_USAGE

    if args.config and not Path(args.config).exists():
        print(f"Error: Configuration file '{args.config}' not found.", file=sys.stderr)
        return EXIT_ERROR

    try:
        config = apply_overrides(load_config(args.config), args)
    except (ValueError, yaml.YAMLError) as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        return EXIT_ERROR

    setup_logging(config.logging, enable_json=args.json_logs)
    log_system_info()

    app = CrawlerApp()
    try:
        return asyncio.run(app.run(
            config,
            start_url,
            max_pages=args.max_pages,
            max_duration=args.max_duration,
            fresh=args.fresh
        ))
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == '__main__':
    sys.exit(main())
