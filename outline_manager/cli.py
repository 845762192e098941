"""Argument parsing, configuration loading, and command dispatch."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from .config import AppConfig, load_config
from .exceptions import ConfigError, OutlineManagerError
from .logging_config import configure_logging
from .manager import Server, ServerManager
from .server.managed import ManagedServer

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="outline-manager",
        description="Provision and track Outline VPN servers on cloud providers",
    )
    parser.add_argument(
        "-c", "--config",
        required=True,
        help="Path to the YAML configuration file",
    )
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate the configuration file and exit",
    )
    commands = parser.add_subparsers(dest="command")

    list_cmd = commands.add_parser("list", help="List servers across all providers")
    list_cmd.add_argument("--cached", action="store_true", help="Do not contact the providers")

    locations = commands.add_parser("locations", help="List locations where servers can be created")
    locations.add_argument("provider")

    create = commands.add_parser("create", help="Create a server")
    create.add_argument("provider")
    create.add_argument("location", help="Region, datacenter or zone id as printed by 'locations'")
    create.add_argument("name")
    create.add_argument("--wait", action="store_true", help="Wait until the server is installed")

    wait = commands.add_parser("wait", help="Wait for a server's installation to finish")
    wait.add_argument("server_id")

    delete = commands.add_parser("delete", help="Delete a managed server or forget a manual one")
    delete.add_argument("server_id")

    add_manual = commands.add_parser("add-manual", help="Add a server installed by hand")
    add_manual.add_argument("api_url")
    add_manual.add_argument("cert_sha256")
    return parser


def _describe(server: Server) -> str:
    if isinstance(server, ManagedServer):
        location = server.get_host().get_cloud_location().id
        state = server.install_state.name
    else:
        location = "-"
        state = "MANUAL"
    return f"{server.id}\t{state}\t{location}\t{server.management_api_url or '-'}"


async def _wait_for_install(server: Server) -> int:
    await server.wait_on_install()
    healthy = await asyncio.to_thread(server.management_api().is_healthy)
    if not healthy:
        # Installed, but the management API cannot be reached, e.g. behind a firewall
        logger.error("Server %s is installed but unreachable", server.id, extra={"server_id": server.id})
        return 1
    print(f"{server.id} ready at {server.management_api_url}")
    return 0


async def _run(config: AppConfig, args: argparse.Namespace) -> int:
    manager = ServerManager(config)

    if args.command == "list":
        for server in await manager.list_servers(fetch_from_host=not args.cached):
            print(_describe(server))
        return 0

    if args.command == "locations":
        for option in await manager.repository(args.provider).list_locations():
            print(f"{option.region}\t{option.name}\t{' '.join(option.location_ids)}")
        return 0

    if args.command == "create":
        server = await manager.create_server(args.provider, args.location, args.name)
        print(server.id)
        if args.wait:
            return await _wait_for_install(server)
        return 0

    if args.command == "wait":
        server = await manager.find_server(args.server_id)
        if server is None:
            raise OutlineManagerError(f"No server with id {args.server_id}")
        return await _wait_for_install(server)

    if args.command == "delete":
        await manager.delete_server(args.server_id)
        print(f"Deleted {args.server_id}")
        return 0

    if args.command == "add-manual":
        try:
            server = manager.add_manual_server(args.api_url, args.cert_sha256)
        except ValueError as exc:
            logger.error("Cannot add server: %s", exc)
            return 1
        print(server.id)
        return 0

    raise AssertionError(f"unhandled command {args.command}")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Load config (minimal logging until config is loaded)
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    configure_logging(config.logging)

    if args.validate:
        logger.info("Configuration is valid")
        return 0

    if args.command is None:
        parser.print_usage(sys.stderr)
        return 2

    try:
        return asyncio.run(_run(config, args))
    except OutlineManagerError as exc:
        logger.error("Fatal error: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0
