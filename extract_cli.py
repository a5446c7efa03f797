#!/usr/bin/env python3
"""
Command-line runner: open a watch page in Chromium, wire both realms onto one
bus, run a single extraction session and print the result as JSON.

Usage:
    caption-pipeline "https://www.youtube.com/watch?v=dQw4w9WgXcQ" --locale en
"""

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from typing import List, Optional

import httpx
from playwright.async_api import async_playwright, Error as PlaywrightError

from delivery_relay import TranscriptReceiver, TranscriptRelay
from dom_realm import DomRealmOrchestrator
from extraction_config import ExtractionConfig, get_extraction_config
from logging_setup import configure_logging, get_logger
from log_events import evt
from page_realm import PageConfig, PageRealmExtractor
from rpc_channel import MessageBus, RpcChannel, RpcResponder
from transcript_models import ErrorKind, TranscriptResult, extract_video_id
from youtubei_client import YOUTUBE_ORIGIN

logger = get_logger(__name__)


def cookies_for_httpx(browser_cookies: List[dict]) -> httpx.Cookies:
    """Copy the browser context's cookies so upstream calls ride on the page's session."""
    jar = httpx.Cookies()
    for cookie in browser_cookies:
        if not cookie.get("name"):
            continue
        jar.set(cookie["name"], cookie.get("value", ""),
                domain=cookie.get("domain", ""), path=cookie.get("path", "/"))
    return jar


async def run_extraction(url: str, config: ExtractionConfig, headless: bool = True) -> TranscriptResult:
    video_id = extract_video_id(url)
    if not video_id:
        evt("extraction_skipped", error_kind=ErrorKind.NO_IDENTIFIER.value)
        return TranscriptResult.empty()

    watch_url = f"{YOUTUBE_ORIGIN}/watch?v={video_id}&hl={config.transcript_locale}"

    async with async_playwright() as p:
        browser = await p.chromium.launch(
            headless=headless,
            args=["--no-sandbox", "--disable-dev-shm-usage"]
        )
        try:
            context = await browser.new_context(locale=config.transcript_locale)
            page = await context.new_page()

            try:
                await page.goto(watch_url, wait_until="networkidle", timeout=60000)
            except PlaywrightError:
                # Watch pages sometimes never reach 'networkidle'
                await page.goto(watch_url, wait_until="domcontentloaded", timeout=30000)
            evt("navigation_complete", video_id=video_id)

            jar = cookies_for_httpx(await context.cookies())
            async with httpx.AsyncClient(cookies=jar, follow_redirects=True) as http:
                bus = MessageBus(window=page)

                extractor = PageRealmExtractor(
                    lambda: PageConfig.from_page(page),
                    http,
                    locale=config.transcript_locale,
                    config=config,
                )
                responder = RpcResponder(bus, extractor.handlers(), deadline=config.rpc_handler_deadline)
                responder.start()

                receiver = TranscriptReceiver(
                    bus,
                    lambda data: evt("transcript_received", sufficient=data.get("sufficient")),
                )
                receiver.start()

                orchestrator = DomRealmOrchestrator(
                    RpcChannel(bus, config.rpc_timeout_seconds),
                    page,
                    relay=TranscriptRelay(bus, config=config),
                    config=config,
                )
                orchestrator.attach()
                try:
                    return await orchestrator.extract_for_url(watch_url)
                finally:
                    await orchestrator.detach()
                    receiver.stop()
                    await responder.stop()
        finally:
            await browser.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Extract a video transcript through the caption pipeline")
    parser.add_argument("url", help="Watch URL or bare video id")
    parser.add_argument("--locale", help="Preferred caption language (default: TRANSCRIPT_LOCALE or en)")
    parser.add_argument("--headful", action="store_true", help="Show the browser window")
    parser.add_argument("--log-level", help="Logging level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--plain-logs", action="store_true", help="Plain text logs instead of JSON")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config = get_extraction_config()
    if args.locale:
        config = replace(config, transcript_locale=args.locale)

    configure_logging(args.log_level or config.log_level, use_json=config.log_json and not args.plain_logs)

    result = asyncio.run(run_extraction(args.url, config, headless=not args.headful))
    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))

    if not result.sufficient:
        logger.warning("no sufficient transcript extracted")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
