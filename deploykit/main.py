import argparse
import json
import sys
from pathlib import Path

from aiohttp import web

from deploykit.__version__ import __version__
from deploykit.config import settings
from deploykit.install.pipeline import Installer
from deploykit.logging import LoggerFactory, setup_logging
from deploykit.quirks import QuirkRegistry
from deploykit.storage.engine import DiskEngine
from deploykit.storage.exceptions import StorageError
from deploykit.web.server import create_app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Privileged OS installation backend")
    parser.add_argument("--host", default=settings.get_setting("server_host"), help="Address to listen on")
    parser.add_argument(
        "--port", type=int, default=settings.get_setting("server_port"), help="Port to listen on"
    )
    parser.add_argument(
        "--quirks-dir",
        default=settings.get_setting("quirks_dir"),
        help="Directory with per-hardware bootloader quirks",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output (very verbose)")
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for log files")
    parser.add_argument(
        "--list-disks", action="store_true", help="Print install target candidates as JSON and exit"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def list_disks(engine: DiskEngine) -> int:
    try:
        disks = engine.enumerate_disks()
    except StorageError as error:
        print(json.dumps(error.to_dict()), file=sys.stderr)
        return 1
    print(json.dumps([disk.to_dict() for disk in disks], indent=2))
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    engine = DiskEngine()
    if args.list_disks:
        return list_disks(engine)

    registry = QuirkRegistry.load(args.quirks_dir)
    installer = Installer(engine=engine, registry=registry)
    app = create_app(installer)
    log.info(f"deploykit-backend {__version__} listening on {args.host}:{args.port}")
    web.run_app(app, host=args.host, port=args.port, print=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
