"""
voicegate.bot.__main__ — Entry point for ``python -m voicegate.bot``
====================================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (soft settings).
3. Create the SQLAlchemy engine, ensure tables exist, seed default tags.
4. Build the Discord REST adapter.
5. Create the VoicegateBot and start it (blocking).

Run with::

    uv run python -m voicegate.bot
"""

from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv

from voicegate.bot.core import VoicegateBot
from voicegate.config import load_config
from voicegate.database.engine import create_db_engine, init_db
from voicegate.services.directory import DiscordDirectory

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("voicegate")


def main() -> None:
    """Bootstrap and run the Voicegate bot."""

    # 1. Environment variables (secrets).
    load_dotenv()

    token = os.getenv("DISCORD_BOT_TOKEN")
    if not token or token == "your-discord-bot-token-here":
        logger.critical(
            "DISCORD_BOT_TOKEN is not set.  "
            "Copy .env.example → .env and paste your bot token."
        )
        sys.exit(1)

    # 2. Soft configuration.
    cfg = load_config()
    logger.info("Config loaded: community=%s", cfg.community_name)

    # 3. Database (tables + default tags, idempotent).
    engine = create_db_engine()
    init_db(engine)

    # 4. Discord REST adapter shared with the coordinator.
    directory = DiscordDirectory(token, cfg.guild_id, timeout=cfg.discord_timeout_seconds)

    # 5. Bot.
    bot = VoicegateBot(cfg=cfg, engine=engine, directory=directory)

    logger.info("Starting Voicegate bot…")
    try:
        bot.run(token, log_handler=None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
