"""
minectl Command Line
====================

Thin argparse front end over ServerManager.

    minectl create --provider hetzner --name mc1 --region fsn1 --size cx21
    minectl list --provider do
    minectl update --provider gce --id 123 --name mc1 --set version=1.20.4
    minectl delete --provider hetzner --id 42 --name mc1 --region fsn1
"""

import argparse
import logging
import os
import signal
import sys
import threading
from typing import Dict, List, Optional

from . import __version__
from .config import MinectlConfig
from .errors import MinectlError
from .logging_config import configure_logging
from .manager import ServerManager
from .providers import ProviderRegistry, ServerSpec

logger = logging.getLogger(__name__)

DEFAULT_SSH_KEY = os.path.join("~", ".ssh", "id_rsa")


def parse_extra(pairs: List[str]) -> Dict[str, str]:
    """Turn repeated key=value arguments into a dict."""
    extra = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"expected key=value, got {pair!r}")
        extra[key] = value
    return extra


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="minectl",
        description="Provision Minecraft servers across cloud providers",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--provider",
        required=True,
        choices=[p["id"] for p in ProviderRegistry.list_providers()],
        help="Backend id",
    )

    server = argparse.ArgumentParser(add_help=False)
    server.add_argument("--name", required=True, help="Server name")
    server.add_argument("--region", default="", help="Region or location")
    server.add_argument("--size", default="", help="Instance size/type")
    server.add_argument("--volume-size", type=int, default=10, help="Data volume size in GB")
    server.add_argument("--edition", default="java", help="Server edition (java, bedrock)")
    server.add_argument("--ssh", default=DEFAULT_SSH_KEY, help="Path to the SSH private key")
    server.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extension field for the bootstrap template (repeatable)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("create", parents=[common, server], help="Create a server")
    subparsers.add_parser("list", parents=[common], help="List minectl servers")

    delete = subparsers.add_parser("delete", parents=[common, server], help="Delete a server")
    delete.add_argument("--id", required=True, help="Server id")
    delete.add_argument(
        "--strict",
        action="store_true",
        help="Fail if any part of the server was already gone",
    )

    update = subparsers.add_parser("update", parents=[common, server], help="Update server software")
    update.add_argument("--id", required=True, help="Server id")

    return parser


def spec_from_args(args) -> ServerSpec:
    try:
        extra = parse_extra(args.set)
    except argparse.ArgumentTypeError as e:
        raise MinectlError(str(e)) from e
    return ServerSpec(
        name=args.name,
        region=args.region,
        size=args.size,
        volume_size=args.volume_size,
        edition=args.edition,
        ssh_key_path=os.path.expanduser(args.ssh),
        extra=extra,
    )


def run(args, config: MinectlConfig, cancel_event: Optional[threading.Event] = None) -> int:
    manager = ServerManager.for_provider(args.provider, config, cancel_event=cancel_event)

    if args.command == "list":
        for server in manager.list_servers():
            print("\t".join([server.id, server.name, server.region, server.public_ip, server.tags]))
        return 0

    spec = spec_from_args(args)

    if args.command == "create":
        server = manager.create_server(spec)
        print("\t".join([server.id, server.name, server.region, server.public_ip, server.tags]))
    elif args.command == "delete":
        report = manager.delete_server(args.id, spec, ignore_missing=not args.strict)
        for resource in report.missing:
            print(f"already gone: {resource}", file=sys.stderr)
    elif args.command == "update":
        manager.update_server(args.id, spec)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = MinectlConfig.from_env()
    configure_logging(config.log_level, config.log_format)

    cancel_event = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel_event.set())
    try:
        return run(args, config, cancel_event)
    except MinectlError as e:
        logger.debug(f"{args.command} failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        signal.signal(signal.SIGINT, previous)


if __name__ == "__main__":
    sys.exit(main())
