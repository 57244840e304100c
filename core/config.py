"""Application configuration for the Gandalf prompt relay.

Central configuration module powered by Pydantic v2.  Settings are loaded from
environment variables (with ``.env`` file support) and an optional
``config/relay_config.json`` file that can override the target site's DOM
contract without a code change.

Key exports:
    RelaySettings: Root settings model (instantiate once at startup).
    DOM_CONTRACT_KEYS: Settings that may be overridden from JSON.
    BASE_DIR / CONFIG_DIR / LOGS_DIR: Canonical project paths.
"""

# pylint: disable=no-member

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Base Paths
# ---------------------------------------------------------------------------
BASE_DIR: Path = Path(__file__).parent.parent
"""Project root directory (parent of ``core/``)."""

CONFIG_DIR: Path = BASE_DIR / "config"
"""Directory containing runtime configuration files."""

LOGS_DIR: Path = BASE_DIR / "logs"
"""Directory for log output files."""

DOM_CONTRACT_KEYS = (
    "input_selector",
    "answer_selector",
    "error_selector",
    "error_pattern",
    "fallback_answer",
)
"""Settings describing the target page layout (version-sensitive)."""

logger: logging.Logger = logging.getLogger(__name__)


class RelaySettings(BaseSettings):
    """Root configuration model for the prompt relay.

    All fields can be set via environment variables or a ``.env`` file.

    Section overview:
        * **Core** -- log level, headless mode.
        * **Remote browser** -- automation service endpoint, session
          keep-alive, connect timeout.
        * **Target** -- default challenge URL and level-unlock seeding.
        * **Timeouts** -- per-step bounds (milliseconds).
        * **DOM contract** -- selectors and the rejection pattern.
        * **Service** -- HTTP bind address, CORS origin, token signing,
          history database.
    """

    # Core
    log_level: str = "INFO"
    headless: bool = True

    # Remote browser (Browserless-style CDP endpoint)
    baas_ws_endpoint: Optional[str] = None
    # Long enough to outlive a single interaction (5 minutes)
    remote_keepalive_ms: int = 300000
    remote_connect_timeout_ms: int = 10000

    # Target
    gandalf_url: str = "https://gandalf.lakera.ai/"
    default_level_slug: str = "baseline"
    # Unlocks every challenge level
    max_level: str = "8"

    # Timeouts
    navigation_timeout_ms: int = 30000
    input_timeout_ms: int = 10000
    response_timeout_ms: int = 30000
    poll_interval_ms: int = 250

    # DOM contract
    input_selector: str = "#comment"
    answer_selector: str = ".answer"
    error_selector: str = ".text-red-500"
    # Regular expression searched in the error node text
    error_pattern: str = "cannot be the same"
    fallback_answer: str = (
        "I'm sorry, I don't understand what you're trying to say."
    )

    # Optimization
    blocked_resource_types: List[str] = Field(
        default_factory=lambda: [
            "image", "font", "media", "stylesheet",
        ]
    )

    # Service
    host: str = "0.0.0.0"
    port: int = 5000
    frontend_url: str = "http://localhost:3000"
    token_key: Optional[str] = Field(
        default=None, alias="RELAY_TOKEN_KEY"
    )
    token_ttl_seconds: int = 86400
    history_db_path: str = str(BASE_DIR / "prompt_history.db")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    def model_post_init(self, __context: Any) -> None:
        """Merge DOM contract overrides from ``config/relay_config.json``."""
        self._load_relay_config_overrides()

    def _load_relay_config_overrides(
        self, config_path: Optional[Path] = None,
    ) -> None:
        """Apply selector / pattern overrides from the JSON config file.

        Only keys in :data:`DOM_CONTRACT_KEYS` are honoured.  Fields that
        were set explicitly (environment, ``.env`` or constructor) keep
        their value.

        Args:
            config_path: Override file location (defaults to
                ``config/relay_config.json``).
        """
        config_path = config_path or CONFIG_DIR / "relay_config.json"
        if not config_path.exists():
            return

        try:
            data: Dict[str, Any] = json.loads(
                config_path.read_text(encoding="utf-8")
            )
        except (OSError, ValueError) as e:
            logger.warning(
                "Ignoring unreadable relay config %s: %s",
                config_path, e,
            )
            return

        dom = data.get("dom_contract", data)
        for key in DOM_CONTRACT_KEYS:
            if key in dom and key not in self.model_fields_set:
                setattr(self, key, str(dom[key]))
                logger.debug(
                    "Relay config override: %s=%r", key, dom[key],
                )
