#!/usr/bin/env python3
"""
Lockstep CLI

Command-line interface for the bridge relayer.

Usage:
    lockstep [--config FILE] [--database-url URL] <command> [subcommand] [options]

Commands:
    run          Start the indexers, worker pools and relay loop
    status       Bridge status of one asset
    proof        Merkle proof of one lock
    commitments  Block commitments (optionally pending only)
    failed       Failed transactions: list, replay
    config       Configuration management: show, validate, schema

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
from dataclasses import asdict
from enum import Enum
from typing import Any, Callable, List, Optional

import yaml

from lockstep import __version__
from lockstep.bridge.config import BridgeConfig, ConfigManager
from lockstep.bridge.observability import configure_logging
from lockstep.bridge.storage import BridgeStore, ProofNotFound


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(json.loads(json.dumps(data, default=str)), default_flow_style=False)
    elif fmt == OutputFormat.TABLE:
        return _format_table(data)
    else:
        return str(data)


def _format_table(data: Any) -> str:
    """Format data as ASCII table."""
    if isinstance(data, dict) and len(data) == 1:
        (only,) = data.values()
        if isinstance(only, list):
            data = only
    if isinstance(data, list) and data and isinstance(data[0], dict):
        headers = list(data[0].keys())
        rows = [[str(row.get(h, ""))[:40] for h in headers] for row in data]
        widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

        lines = []
        lines.append(" | ".join(h.ljust(widths[i]) for i, h in enumerate(headers)))
        lines.append("-+-".join("-" * w for w in widths))
        for row in rows:
            lines.append(" | ".join(c.ljust(widths[i]) for i, c in enumerate(row)))
        return "\n".join(lines)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def _record(obj: Any) -> Any:
    data = asdict(obj)
    for key, value in data.items():
        if isinstance(value, Enum):
            data[key] = value.value
    return data


class LockstepCLI:
    """Main CLI application.

    ``service_factory`` builds a BridgeService from a BridgeConfig; it defaults
    to ``BridgeService.from_config`` (live ledgers over JSON-RPC).
    """

    def __init__(self, service_factory: Optional[Callable[[BridgeConfig], Any]] = None):
        self.service_factory = service_factory
        self.parser = argparse.ArgumentParser(
            prog="lockstep",
            description="Two-ledger asset bridge relayer",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"lockstep {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "table", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error output",
        )
        self.parser.add_argument("--config", "-c", help="YAML configuration file")
        self.parser.add_argument("--database-url", help="Override storage.database_url")

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        self.subparsers.add_parser("run", help="Run the bridge service")

        status = self.subparsers.add_parser("status", help="Bridge status of an asset")
        status.add_argument("--asset", "-a", required=True, type=int, help="Asset ID")
        status.add_argument("--chain", help="Source ledger name")

        proof = self.subparsers.add_parser("proof", help="Merkle proof of a lock")
        proof.add_argument("--lock-hash", "-l", required=True, help="Lock commitment hash")

        commitments = self.subparsers.add_parser("commitments", help="List block commitments")
        commitments.add_argument("--pending", action="store_true", help="Only commitments not yet submitted")
        commitments.add_argument("--source", help="Filter by source ledger")
        commitments.add_argument("--limit", type=int, default=100, help="Maximum rows")

        failed = self.subparsers.add_parser("failed", help="Failed transactions")
        failed_sub = failed.add_subparsers(dest="subcommand")
        failed_list = failed_sub.add_parser("list", help="List failed transactions")
        failed_list.add_argument("--all", action="store_true", help="Include resolved entries")
        replay = failed_sub.add_parser("replay", help="Replay failed transactions")
        replay.add_argument("--id", type=int, action="append", dest="ids", help="Entry id (repeatable)")

        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")
        config_sub.add_parser("show", help="Show effective configuration (secrets redacted)")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except Exception as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)
        if cmd in ("failed", "config") and not subcmd:
            raise CLIError(f"{cmd}: a subcommand is required", exit_code=2)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        return handler(args)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _manager(self, args: argparse.Namespace) -> ConfigManager:
        mgr = ConfigManager()
        if args.config:
            mgr.load_from_file(args.config)
        else:
            mgr.load_defaults()
        if args.database_url:
            mgr.set("storage.database_url", args.database_url)
        return mgr

    def _store(self, args: argparse.Namespace) -> BridgeStore:
        store = BridgeStore(self._manager(args).config.storage.database_url.get())
        store.create_schema()
        return store

    def _service(self, config: BridgeConfig) -> Any:
        if self.service_factory is not None:
            return self.service_factory(config)
        from lockstep.bridge.service import BridgeService
        return BridgeService.from_config(config)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _handle_run(self, args: argparse.Namespace) -> Any:
        config = self._manager(args).config
        configure_logging(config.observability.log_level.get(), config.observability.log_format.get())
        service = self._service(config)
        signal.signal(signal.SIGTERM, lambda *_: service.request_stop())
        service.start()
        try:
            while not service.wait(1.0):
                pass
        except KeyboardInterrupt:
            pass
        finally:
            service.stop()
        return {"status": "stopped"}

    def _handle_status(self, args: argparse.Namespace) -> Any:
        status = self._store(args).get_bridge_status(args.asset, chain=args.chain)
        if status is None:
            raise CLIError(f"no lock recorded for asset {args.asset}")
        return status

    def _handle_proof(self, args: argparse.Namespace) -> Any:
        try:
            proof = self._store(args).get_proof(args.lock_hash)
        except ProofNotFound as exc:
            raise CLIError(str(exc)) from exc
        data = _record(proof)
        data["single_leaf"] = not proof.proof
        return data

    def _handle_commitments(self, args: argparse.Namespace) -> Any:
        rows = self._store(args).list_commitments(
            pending_only=args.pending, source_chain=args.source, limit=args.limit
        )
        return {"commitments": [_record(c) for c in rows]}

    def _handle_failed_list(self, args: argparse.Namespace) -> Any:
        rows = self._store(args).list_failed_transactions(include_resolved=args.all)
        return {"failed_transactions": [_record(f) for f in rows]}

    def _handle_failed_replay(self, args: argparse.Namespace) -> Any:
        service = self._service(self._manager(args).config)
        return service.relay.replay_failed_transactions(ids=args.ids)

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return self._manager(args).config.to_dict(redact=True)

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = self._manager(args).validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return self._manager(args).export_schema()


def main() -> int:
    """CLI entry point."""
    cli = LockstepCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
