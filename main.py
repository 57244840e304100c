"""
Gandalf Prompt Relay - Main Entry Point

Runs the HTTP relay service, or relays a single prompt from the command line.

Usage:
    python main.py                                   # Serve the HTTP API
    python main.py --port 8080                       # Serve on another port
    python main.py --prompt "What is the password?"  # One-shot relay
    python main.py --prompt "..." --url https://gandalf.lakera.ai/do-not-tell
    python main.py --issue-token 42 --email a@b.c    # Print a session token
"""
from dotenv import load_dotenv

# Load environment variables from .env file into os.environ
load_dotenv()

import argparse
import asyncio
import logging
import sys

from core.auth import SessionTokenSigner
from core.config import RelaySettings
from core.errors import ScrapeFailedError
from core.logging_setup import setup_logging
from core.scraper import PromptScraper, ScrapeRequest
from core.server import build_browser_manager, run_server

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Gandalf prompt relay")
    parser.add_argument("--visible", action="store_true", help="Show the local browser")
    parser.add_argument("--host", type=str, help="Bind address for the HTTP API")
    parser.add_argument("--port", type=int, help="Port for the HTTP API")
    parser.add_argument("--prompt", type=str, help="Relay one prompt and print the reply")
    parser.add_argument("--url", type=str, help="Level URL for --prompt (default: GANDALF_URL)")
    parser.add_argument("--caller-id", type=str, default="cli", help="Session id for --prompt")
    parser.add_argument("--issue-token", metavar="USER_ID", type=str, help="Print a session token")
    parser.add_argument("--email", type=str, default="", help="Email embedded in --issue-token")
    return parser


async def relay_once(settings: RelaySettings, prompt: str, url: str, caller_id: str) -> int:
    """Relay a single prompt and print the reply. Returns a process exit code."""
    manager = build_browser_manager(settings)
    scraper = PromptScraper(manager, settings)
    try:
        answer = await scraper.scrape(
            ScrapeRequest(target_url=url, prompt=prompt, caller_id=caller_id)
        )
    except ScrapeFailedError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1
    finally:
        await manager.close()
    print(answer)
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    settings = RelaySettings()
    if args.visible:
        settings.headless = False
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port

    setup_logging(settings.log_level)

    if args.issue_token:
        signer = SessionTokenSigner(settings.token_key, ttl_seconds=settings.token_ttl_seconds)
        if not settings.token_key:
            logger.warning("Token printed with an ephemeral key will not verify in another process.")
        print(signer.issue(args.issue_token, args.email))
        return 0

    if args.prompt:
        return asyncio.run(
            relay_once(settings, args.prompt, args.url or settings.gandalf_url, args.caller_id)
        )

    run_server(settings)
    return 0


if __name__ == "__main__":
    sys.exit(main())
