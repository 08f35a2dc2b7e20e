from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from typing import List, Optional

from .config.logging_config import init_logging
from .config.settings import hostname_fallback_enabled
from .config.store import CanonicalStore
from .config.watcher import ConfigWatcher
from .errors import ConfigError
from .servers.webserver import AppContext, start_webserver

CONFIG_ENV_VAR = "DPACK_FOREVER_CONFIG"


def default_config_path(environ: Optional[dict] = None) -> str:
    """Brief: Config path used when --config is not given.

    Inputs:
      - environ: Optional mapping (defaults to os.environ).

    Outputs:
      - str: $DPACK_FOREVER_CONFIG, else ~/.dforever.yml.
    """

    env = os.environ if environ is None else environ
    return env.get(CONFIG_ENV_VAR) or os.path.join(os.path.expanduser("~"), ".dforever.yml")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dforever", description="dforever - Start a dPack Forever server")
    parser.add_argument(
        "--config",
        default=default_config_path(),
        help=(
            "Path to the config file. Defaults to $DPACK_FOREVER_CONFIG, "
            "or ~/.dforever.yml when that is not set."
        ),
    )
    parser.add_argument("--host", default="0.0.0.0", help="Address the HTTP listener binds to")
    parser.add_argument("--port", type=int, default=None, help="Override ports.http from the config")
    parser.add_argument("--log-level", default=None, help="debug, info, warn, error or crit")
    parser.add_argument("--log-file", default=None, help="Append logs to this file")
    parser.add_argument("--no-watch", action="store_true", help="Do not reload the config when the file changes")
    return parser


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the dforever server.
    Parses arguments, loads the configuration, and serves every configured vhost
    until SIGINT/SIGTERM.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code: 0 on clean shutdown, 1 when the configuration is invalid.

    Example use:
        CLI:
            dforever --config ~/.dforever.yml --log-level debug
    """
    args = build_parser().parse_args(argv)

    try:
        store = CanonicalStore(hostname_fallback=hostname_fallback_enabled())
        store.load(args.config)
    except (ConfigError, OSError) as exc:
        init_logging({"level": args.log_level})
        logging.getLogger("dforever.main").error("Cannot start: %s", exc)
        print(str(exc), file=sys.stderr)
        return 1

    # CLI flags win over the optional logging block of the config file.
    raw_log_cfg = store.canonical.get("logging")
    log_cfg = dict(raw_log_cfg) if isinstance(raw_log_cfg, dict) else {}
    if args.log_level:
        log_cfg["level"] = args.log_level
    if args.log_file:
        log_cfg["file"] = args.log_file
    init_logging(log_cfg)
    logger = logging.getLogger("dforever.main")

    settings = store.settings
    logger.info("Storing dPacks under %s", settings.directory)
    logger.info("Serving hostnames: %s", ", ".join(str(h) for h in store.hostnames()))

    shutdown_event = threading.Event()

    def _request_shutdown(signum, _frame) -> None:
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        shutdown_event.set()

    def _sighup_handler(_signum, _frame) -> None:
        logger.info("Received SIGHUP, reloading configuration")
        try:
            store.load()
        except (ConfigError, OSError) as exc:
            logger.error("Configuration reload failed, keeping previous config: %s", exc)

    for signum, handler in (
        (signal.SIGINT, _request_shutdown),
        (signal.SIGTERM, _request_shutdown),
        (getattr(signal, "SIGHUP", None), _sighup_handler),
    ):
        if signum is None:
            continue
        try:
            signal.signal(signum, handler)
        except (ValueError, OSError):
            logger.warning("Could not install handler for signal %s", signum)

    context = AppContext(store)
    web_handle = start_webserver(context, host=args.host, port=args.port)

    watcher: Optional[ConfigWatcher] = None
    if not args.no_watch:
        watcher = ConfigWatcher(store)
        watcher.start()

    logger.info("Startup Completed")
    exit_code = 0
    try:
        while not shutdown_event.is_set():
            if not web_handle.is_running():
                logger.error("Webserver stopped unexpectedly")
                exit_code = 1
                break
            shutdown_event.wait(1.0)
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
    finally:
        if watcher is not None:
            watcher.stop()
        logger.info("Stopping webserver")
        web_handle.stop()

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
