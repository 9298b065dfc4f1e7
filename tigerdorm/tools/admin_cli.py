"""
Admin CLI tool for TigerDorm.

This tool manages a TigerDorm database:
- init: Create the schema
- stats: Print row counts as JSON
- seed: Load users, geofences, members and devices from a YAML fixture

Usage:
    tigerdorm-admin init
    tigerdorm-admin stats
    tigerdorm-admin seed fixtures/dorm.yaml

Seeding goes through the normal policy-checked operations, each row acting
as its own principal, so a fixture cannot create state the policies would
refuse (e.g. a geofence without its owner membership).

Fixture format:
    users:
      - id: user_alice
        email: alice@example.edu
        full_name: Alice
    geofences:
      - owner: user_alice
        name: Room 204
        invite_code: ABC123
        center_latitude: 40.3431
        center_longitude: -74.6551
        members: [user_bob]
    devices:
      - user: user_alice
        device_id: tracker-001
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Any

import yaml

from ..config import ServerConfig
from ..main import open_store, setup_logging
from ..store.state_store import StateStore

logger = logging.getLogger(__name__)


class AdminCLI:
    """Admin operations over a StateStore.

    Example:
        >>> cli = AdminCLI()
        >>> summary = await cli.seed(store, yaml.safe_load(text))
        >>> summary["geofences"]
        1
    """

    async def stats(self, store: StateStore) -> str:
        """Row counts per table as sorted JSON."""
        return json.dumps(await store.get_stats(), indent=2, sort_keys=True)

    async def seed(self, store: StateStore, data: dict[str, Any]) -> dict[str, int]:
        """Load a fixture.

        Args:
            store: Initialized store
            data: Parsed fixture

        Returns:
            Number of rows created per kind

        Raises:
            ValueError: If the fixture is malformed; nothing is written then
        """
        _validate_fixture(data)

        summary = {"users": 0, "geofences": 0, "members": 0, "devices": 0}

        for entry in data.get("users") or []:
            user_id = entry["id"]
            await store.create_user(user_id, email=entry["email"], full_name=entry.get("full_name"))
            summary["users"] += 1

        for entry in data.get("geofences") or []:
            owner = entry["owner"]
            geofence = await store.create_geofence(
                owner,
                name=entry["name"],
                center_latitude=float(entry["center_latitude"]),
                center_longitude=float(entry["center_longitude"]),
                invite_code=entry.get("invite_code"),
                radius_meters=entry.get("radius_meters"),
                hysteresis_meters=entry.get("hysteresis_meters"),
            )
            summary["geofences"] += 1

            for member in entry.get("members") or []:
                await store.join_geofence(member, geofence.invite_code)
                summary["members"] += 1

        for entry in data.get("devices") or []:
            await store.bind_device(entry["user"], entry["device_id"])
            summary["devices"] += 1

        logger.info("Fixture loaded", extra=summary)
        return summary


_REQUIRED_KEYS = {
    "users": ("id", "email"),
    "geofences": ("owner", "name", "center_latitude", "center_longitude"),
    "devices": ("user", "device_id"),
}


def _validate_fixture(data: Any) -> None:
    """Check a fixture for missing sections or keys before anything is written."""
    if not isinstance(data, dict):
        raise ValueError("Fixture must be a mapping")

    for section, keys in _REQUIRED_KEYS.items():
        entries = data.get(section) or []
        if not isinstance(entries, list):
            raise ValueError(f"Fixture section '{section}' must be a list")
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise ValueError(f"{section}[{index}] must be a mapping")
            missing = [key for key in keys if key not in entry]
            if missing:
                raise ValueError(f"{section}[{index}] is missing {', '.join(missing)}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="TigerDorm database administration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", help="Database path (overrides TIGERDORM_DB_PATH)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")
    subparsers.add_parser("init", help="Create the database schema")
    subparsers.add_parser("stats", help="Print row counts")
    seed_parser = subparsers.add_parser("seed", help="Load a YAML fixture")
    seed_parser.add_argument("file", help="Fixture file")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = ServerConfig.from_env()
    if args.db:
        config.storage = dataclasses.replace(config.storage, db_path=args.db)
    setup_logging(config)

    asyncio.run(_run(args, config))


async def _run(args: argparse.Namespace, config: ServerConfig) -> None:
    cli = AdminCLI()
    store = await open_store(config)

    if args.command == "init":
        print(f"Schema ready at {store.db_path}")

    elif args.command == "stats":
        print(await cli.stats(store))

    elif args.command == "seed":
        with open(args.file) as f:
            data = yaml.safe_load(f)
        summary = await cli.seed(store, data)
        print(json.dumps(summary, sort_keys=True))


if __name__ == "__main__":
    main()
