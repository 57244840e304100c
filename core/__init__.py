"""
Core module for the Gandalf prompt relay.

This package contains the relay orchestration, outcome extraction,
configuration, and the thin HTTP boundary around them.

Submodules:
    config: Application settings (``RelaySettings``) via Pydantic.
    errors: Exception taxonomy; only ``ScrapeFailedError`` leaves the core.
    scraper: ``PromptScraper`` entry point, level seeding and navigation.
    extractor: ``ResponseExtractor`` polling and answer/rejection parsing.
    auth: ``SessionTokenSigner`` Fernet-based caller tokens.
    history: ``PromptHistory`` SQLite store of prompt/response pairs.
    server: aiohttp application exposing ``/api/scrapper``.
    logging_setup: Compressed rotating file + safe console logging.
"""
