import os
import sys
import asyncio
import argparse
import logging
from typing import Optional, List

from .bot import RattingBot
from .settings import (
    DATA_DIR, SettingsProvider, load_env_file, apply_env_overrides, settings_path_from_env,
)

LOG_FILE_PATH = os.path.join(DATA_DIR, "everat_status.log")


def setup_logging() -> logging.Logger:
    """Log to everat_status.log in the working directory and to the console."""
    logger = logging.getLogger("everat_status")
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")

    file_handler = logging.FileHandler(LOG_FILE_PATH, encoding="utf-8")
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logger.propagate = False
    logger.info("==== Starting EveRAT status ====")
    return logger


def run_bot(settings_path: str, override_token: Optional[str], logger: Optional[logging.Logger] = None):
    logger = logger or setup_logging()
    logger.info("[run_bot] Starting bot")
    load_env_file(logger)
    settings = SettingsProvider(settings_path, logger=logger).load()
    try:
        apply_env_overrides(settings)
    except ValueError as exc:
        print(f"[config] Invalid environment variable: {exc}", file=sys.stderr)
        logger.error("[config] Invalid environment variable: %s", exc)
        sys.exit(1)
    if override_token:
        settings.bot_token = override_token.strip()

    for key, value in settings.masked().items():
        logger.info("[config] %s = %s", key, value)

    token = (settings.bot_token or "").strip()
    if not token or token == "Discord_bot_token":
        msg = f"Discord token is not set. Edit {settings_path}, set EVERAT_TOKEN or pass --token."
        print(msg, file=sys.stderr)
        logger.error("[run_bot] %s", msg)
        sys.exit(1)

    bot = RattingBot(settings, logger=logger)
    try:
        asyncio.run(bot.run_forever(token))
    except KeyboardInterrupt:
        logger.info("[run_bot] Stopped by user")
        print("Stopped by user.")
    except Exception:
        logger.exception("[run_bot] Unhandled error while running the bot")
        raise


def init_settings(settings_path: str, logger: logging.Logger) -> None:
    if os.path.isfile(settings_path):
        print(f"{settings_path} already exists.")
        return
    SettingsProvider(settings_path, logger=logger).load()
    print(f"Wrote default settings to {settings_path}.")


def main(argv: Optional[List[str]] = None):
    logger = setup_logging()
    logger.info("[main] Arguments: %s", argv if argv is not None else sys.argv[1:])
    parser = argparse.ArgumentParser(description="EVE Online ratting report Discord bot")
    parser.add_argument("--token", help="Override the Discord token from botSettings.json / EVERAT_TOKEN")
    parser.add_argument("--settings", default=None,
                        help="Path to botSettings.json (default: EVERAT_SETTINGS_FILE or ./botSettings.json)")
    parser.add_argument("command", nargs="?", help="Optional command: run (default) or init-settings")

    args = parser.parse_args(argv)
    settings_path = args.settings or settings_path_from_env()

    command_raw = getattr(args, "command", None)
    command = (command_raw or "run").strip().lower().replace("-", "_")
    if command == "init_settings":
        init_settings(settings_path, logger)
        return
    if command != "run":
        parser.error(f"Unknown command: {command_raw!r}")

    run_bot(settings_path, args.token, logger=logger)


if __name__ == "__main__":
    main()
