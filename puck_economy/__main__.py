"""CLI entry point for puck-economy."""
import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import yaml

from .config import EconomyConfig, load_config
from .main import EconomyApp

CONFIG_ENV_VAR = "PUCK_ECONOMY_CONFIG"
DEFAULT_CONFIG_PATHS = ("/etc/puck-economy/config.yaml", "./config.yaml")


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Puck Economy - Twitch extension backend")
    parser.add_argument("--config", type=str, help="Path to config.yaml")
    parser.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--validate-config", action="store_true", help="Load the config, report, and exit")
    return parser.parse_args(argv)


def resolve_config_path(explicit: str | None = None) -> str | None:
    """First of: --config, $PUCK_ECONOMY_CONFIG, then the default locations."""
    if explicit:
        return explicit
    from_env = os.environ.get(CONFIG_ENV_VAR)
    if from_env:
        return from_env
    for candidate in DEFAULT_CONFIG_PATHS:
        if Path(candidate).exists():
            return candidate
    return None


def read_config(config_path: str, logger: logging.Logger) -> EconomyConfig:
    try:
        return load_config(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error("Config %s is invalid: %s", config_path, e)
        sys.exit(1)


async def main_async(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging(args.log_level)
    logger = logging.getLogger("economy")

    config_path = resolve_config_path(args.config)
    if not config_path:
        logger.error("No config file found. Use --config or place config.yaml in CWD.")
        sys.exit(1)

    config = read_config(config_path, logger)
    if args.validate_config:
        logger.info("Config %s is valid.", config_path)
        return

    app = EconomyApp(config_path, config=config)

    # Unix only; Windows falls back to KeyboardInterrupt
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(app.stop()))

    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()


def main() -> None:
    """Sync entry point for pyproject.toml [project.scripts]."""
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
