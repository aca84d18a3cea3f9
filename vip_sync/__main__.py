"""CLI entry point for vip-sync."""
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from .main import BackendApp, ConsumerApp

CONFIG_CANDIDATES = (
    "/etc/vip-sync/config.yaml",
    "./config.yaml",
)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="vip-sync — VIP entitlement sync for game servers")
    parser.add_argument("role", choices=["backend", "consumer"], help="Process to run")
    parser.add_argument("--config", type=str, help="Path to config.yaml")
    parser.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--validate-config", action="store_true", help="Validate config and exit without starting")
    return parser.parse_args(argv)


def resolve_config_path(explicit: str | None) -> str | None:
    if explicit:
        return explicit
    for candidate in CONFIG_CANDIDATES:
        if Path(candidate).exists():
            return candidate
    return None


def build_app(role: str, config_path: str) -> BackendApp | ConsumerApp:
    return BackendApp(config_path) if role == "backend" else ConsumerApp(config_path)


def install_signal_handlers(loop: asyncio.AbstractEventLoop, app: BackendApp | ConsumerApp) -> list[signal.Signals]:
    """Route SIGTERM/SIGINT to ``app.stop()``. Unix only; Windows uses KeyboardInterrupt."""
    if sys.platform == "win32":
        return []
    stopping: set[asyncio.Task] = set()

    def _request_stop(sig: signal.Signals) -> None:
        logging.getLogger("vipsync").info("Received %s, shutting down", sig.name)
        task = asyncio.ensure_future(app.stop())
        stopping.add(task)
        task.add_done_callback(stopping.discard)

    signals = [signal.SIGTERM, signal.SIGINT]
    for sig in signals:
        loop.add_signal_handler(sig, _request_stop, sig)
    return signals


async def main_async(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging(args.log_level)
    logger = logging.getLogger("vipsync")

    config_path = resolve_config_path(args.config)
    if not config_path:
        logger.error("No config file found. Use --config or place config.yaml in CWD.")
        sys.exit(1)

    if args.validate_config:
        from .config import load_config

        try:
            load_config(config_path)
            logger.info("Config is valid.")
        except Exception as e:
            logger.error("Config validation failed: %s", e)
            sys.exit(1)
        return

    app = build_app(args.role, config_path)
    loop = asyncio.get_running_loop()
    signals = install_signal_handlers(loop, app)

    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()
        for sig in signals:
            loop.remove_signal_handler(sig)


def main() -> None:
    """Sync entry point for pyproject.toml [project.scripts]."""
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
