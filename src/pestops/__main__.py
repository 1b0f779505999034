import argparse
import asyncio
import logging
import signal

from pydantic import ValidationError

from pestops.application import Application
from pestops.config_loader import DEFAULT_CONFIG_FILE, load_config
from pestops.exceptions import ConfigurationError

# --- Logging Configuration ---
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", level=logging.INFO
)
# Keep external libraries less verbose
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("aiosqlite").setLevel(logging.INFO)
logger = logging.getLogger(__name__)


# --- Argument Parsing ---
parser = argparse.ArgumentParser(
    description="PestOps workflow automation and integration sync service"
)
parser.add_argument(
    "--config",
    default=DEFAULT_CONFIG_FILE,
    help="Path to the YAML configuration file (default: config.yaml)",
)
parser.add_argument(
    "--host",
    default=None,
    help="Interface to bind the web server to (overrides config file)",
)
parser.add_argument(
    "--port",
    type=int,
    default=None,
    help="Port for the web server (overrides config file)",
)
parser.add_argument(
    "--bootstrap-triggers",
    action=argparse.BooleanOptionalAction,
    default=None,
    help="Create or update the default workflow triggers on startup",
)
parser.add_argument(
    "--no-scheduler",
    action="store_true",
    help="Do not run the background sync scheduler",
)


async def _run(app: Application, bootstrap_triggers: bool | None) -> None:
    loop = asyncio.get_running_loop()
    for sig_num, sig_name in {signal.SIGINT: "SIGINT", signal.SIGTERM: "SIGTERM"}.items():
        try:
            loop.add_signal_handler(
                sig_num, lambda name=sig_name: app.initiate_shutdown(name)
            )
        except NotImplementedError:
            logger.warning(f"{sig_name} handler not supported on this platform.")
    try:
        await app.setup(bootstrap_triggers=bootstrap_triggers)
        await app.serve()
    finally:
        if not app.is_shutdown_complete():
            await app.stop()


def main() -> int:
    """Loads config, applies CLI overrides and runs the application."""
    args = parser.parse_args()
    try:
        config = load_config(config_file_path=args.config)
    except (ValidationError, ValueError) as e:
        logger.critical(f"Configuration error during startup: {e}")
        return 1

    server_overrides = {
        key: value
        for key, value in {"host": args.host, "port": args.port}.items()
        if value is not None
    }
    updates = {}
    if server_overrides:
        updates["server"] = config.server.model_copy(update=server_overrides)
    if args.no_scheduler:
        updates["scheduler"] = config.scheduler.model_copy(update={"enabled": False})
    if updates:
        config = config.model_copy(update=updates)

    app = Application(config)
    try:
        logger.info("Starting PestOps...")
        asyncio.run(_run(app, args.bootstrap_triggers))
    except ConfigurationError as e:
        logger.critical(f"Configuration error during startup: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Received KeyboardInterrupt in main, shut down.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
