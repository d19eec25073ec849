"""
Command-line entry point.

    python -m dlcserver                       # defaults / DLC_* environment
    python -m dlcserver --port 8080 --workers 4
    python -m dlcserver --root /srv/dlc --restart backoff
"""

import argparse
import sys

from . import __version__
from .config import RESTART_MODES, RestartPolicy, ServerConfig
from .supervisor import Supervisor


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dlcserver",
        description="Multi-process file server for downloadable content archives",
    )
    parser.add_argument("--host", "-H", help="Address to bind (default: 0.0.0.0)")
    parser.add_argument("--port", "-p", type=int, help="Port to listen on (default: 4242)")
    parser.add_argument("--workers", "-w", type=int,
                        help="Worker processes (default: max(2, CPU count))")
    parser.add_argument("--root", "-r",
                        help="Primary file root (default: $DLC_DIRECTORY or ./dlc)")
    parser.add_argument("--prefix", help="URL mount prefix for files (default: /static)")
    parser.add_argument("--log-level", "-l",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level (default: INFO)")
    parser.add_argument("--restart", choices=RESTART_MODES, default="always",
                        help="What to do when a worker dies (default: always)")
    parser.add_argument("--no-uvloop", action="store_true",
                        help="Use the stock asyncio event loop in workers")
    parser.add_argument("--version", "-v", action="version",
                        version=f"dlcserver {__version__}")
    return parser


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    """CLI flags win; anything unset falls back to the DLC_* environment."""
    return ServerConfig.from_env(
        host=args.host,
        port=args.port,
        workers=args.workers,
        root=args.root,
        mount_prefix=args.prefix,
        log_level=args.log_level,
        restart=RestartPolicy(mode=args.restart),
        use_uvloop=False if args.no_uvloop else None,
    )


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = config_from_args(args)
    try:
        config.validate()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    Supervisor(config).start()
    return 0


if __name__ == "__main__":
    sys.exit(main())
