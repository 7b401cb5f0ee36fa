"""
Stream Relay - Command Line

Runs the relay engine without any UI. Stream keys come from the
environment (TWITCH_STREAM_KEY, YOUTUBE_STREAM_KEY, KICK_STREAM_KEY, also
read from a .env file) or from flags.

Usage:
    python -m stream_relay run --port 1935
    python -m stream_relay render-config
"""

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import List, Mapping, Optional

from .controller import RelayController
from .errors import REDACTED, RelayError, redact
from .model import Platform, PlatformCredential, RelayState, StatusEvent
from .settings import load_settings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUNTIME_FAILURE = 1
EXIT_ERROR = 2


def env_var_for(platform: Platform) -> str:
    return f"{platform.name}_STREAM_KEY"


def credentials_from(args: argparse.Namespace, env: Optional[Mapping[str, str]] = None) -> List[PlatformCredential]:
    """Flags win over environment variables."""
    env = os.environ if env is None else env
    credentials = []
    for platform in Platform:
        key = getattr(args, platform.value, None) or env.get(env_var_for(platform), "")
        credentials.append(PlatformCredential(platform, key))
    return credentials


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stream-relay",
        description="Relay one local RTMP stream to several streaming platforms",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("-c", "--config", type=Path, default=None,
                        help="Settings file (default: ~/.config/stream_relay/relay.yaml)")
    parser.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file")

    sub = parser.add_subparsers(dest="command")

    def add_common(p: argparse.ArgumentParser):
        p.add_argument("-p", "--port", type=int, default=None, help="Ingest listen port")
        for platform in Platform:
            p.add_argument(
                f"--{platform.value}", metavar="KEY", default=None,
                help=f"{platform.label} stream key (prefer ${env_var_for(platform)}; flags show up in ps)",
            )

    run = sub.add_parser("run", help="Start the relay and supervise it until interrupted")
    add_common(run)

    render = sub.add_parser("render-config", help="Print the generated media server config")
    add_common(render)
    render.add_argument("--show-keys", action="store_true", help="Do not mask stream keys")
    return parser


def configure_logging(verbose: bool, log_file: Optional[Path] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def cmd_render_config(controller: RelayController, args: argparse.Namespace) -> int:
    credentials = credentials_from(args)
    # Validates the real keys even when they are not shown
    text = controller.render_config(credentials, args.port)
    if not args.show_keys:
        masked = [PlatformCredential(c.platform, REDACTED) if c.enabled else c for c in credentials]
        text = controller.render_config(masked, args.port)
    sys.stdout.write(text)
    return EXIT_OK


def cmd_run(controller: RelayController, args: argparse.Namespace) -> int:
    done = threading.Event()
    result = {"code": EXIT_OK}

    def on_event(event: StatusEvent):
        if event.new_state == RelayState.FAILED:
            result["code"] = EXIT_RUNTIME_FAILURE
            done.set()

    def signal_handler(signum, frame):
        logger.info("Shutting down...")
        done.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    controller.add_listener(on_event)
    session = controller.start(credentials_from(args), args.port)
    print(f"Publish to: {session.ingest_url}  (stream key: any, e.g. 'live')")

    try:
        while not done.wait(1.0):
            pass
    finally:
        if controller.state == RelayState.FAILED:
            tail = controller.supervisor.output_tail()
            if tail:
                secrets = session.config.secrets if session.config else []
                logger.error(f"Media server output:\n{redact(tail, secrets)}")
        controller.stop()
    return result["code"]


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_ERROR

    configure_logging(args.verbose, args.log_file)

    try:
        settings = load_settings(args.config)
        controller = RelayController(settings)
        if args.command == "render-config":
            return cmd_render_config(controller, args)
        return cmd_run(controller, args)
    except RelayError as e:
        logger.error(f"{e.kind}: {e}")
        return EXIT_ERROR
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
