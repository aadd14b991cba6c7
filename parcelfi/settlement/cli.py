#!/usr/bin/env python3
"""
PARCELFI Settlement CLI

Operator command-line interface for the settlement engine.

Usage:
    parcelfi <command> [subcommand] [options]

Commands:
    config      Configuration management
    quote       Repayment quote for a principal, rate and funding date
    demo        Run a loan lifecycle against the mock settlement network

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

import yaml

from parcelfi import __version__


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


def _decimal_arg(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a decimal amount: {value!r}")


class LendingCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="parcelfi",
            description="PARCELFI loan and collateral settlement engine",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"parcelfi {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "table", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file (default: search parcelfi.yaml locations)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        self._register_config_commands()
        self._register_quote_command()
        self._register_demo_command()

    def _register_config_commands(self) -> None:
        """Register config subcommands."""
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        # config get
        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., settlement.max_retries)")

        # config set
        set_cmd = config_sub.add_parser("set", help="Set configuration value for this run")
        set_cmd.add_argument("path", help="Config path")
        set_cmd.add_argument("value", help="Value to set")

        # config show
        config_sub.add_parser("show", help="Show all configuration")

        # config validate
        config_sub.add_parser("validate", help="Validate configuration")

        # config schema
        config_sub.add_parser("schema", help="Export configuration schema")

    def _register_quote_command(self) -> None:
        quote = self.subparsers.add_parser("quote", help="Compute a repayment quote")
        quote.add_argument("--principal", "-p", type=_decimal_arg, required=True, help="Loan principal")
        quote.add_argument("--rate-bps", "-r", type=int, required=True, help="Annual rate in basis points")
        quote.add_argument("--funded-at", required=True, help="Funding time (ISO 8601, UTC)")
        quote.add_argument("--as-of", help="Quote time (ISO 8601, UTC; default: now)")

    def _register_demo_command(self) -> None:
        demo = self.subparsers.add_parser(
            "demo", help="Run open, fund and repay against the mock settlement network",
        )
        demo.add_argument("--kind", choices=["express", "p2p"], default="express", help="Loan kind")
        demo.add_argument("--principal", "-p", type=_decimal_arg, default=Decimal("20000"), help="Loan principal")
        demo.add_argument("--asset-value", type=_decimal_arg, default=Decimal("100000"), help="Parcel value")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            self._prepare(parsed)
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

    def _prepare(self, args: argparse.Namespace) -> None:
        from parcelfi.settlement.config import get_config_manager
        from parcelfi.settlement.observability import configure_logging

        mgr = get_config_manager()
        if args.config:
            mgr.load_from_file(args.config)
        obs = mgr.config.observability
        configure_logging("error" if args.quiet else obs.log_level.get(), obs.log_format.get())

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        return handler(args)

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        from parcelfi.settlement.config import ConfigError, get_config_manager
        mgr = get_config_manager()
        try:
            value = mgr.get(args.path)
        except ConfigError as e:
            raise CLIError(str(e), exit_code=2)
        return {"path": args.path, "value": str(value) if isinstance(value, Decimal) else value}

    def _handle_config_set(self, args: argparse.Namespace) -> Any:
        from parcelfi.settlement.config import ConfigError, get_config_manager
        mgr = get_config_manager()
        try:
            mgr.set(args.path, args.value)
        except ConfigError as e:
            raise CLIError(str(e), exit_code=2)
        return {"path": args.path, "value": args.value, "status": "updated"}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        from parcelfi.settlement.config import get_config_manager
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        from parcelfi.settlement.config import get_config_manager
        errors = get_config_manager().validate()
        if errors:
            raise CLIError("invalid configuration: " + "; ".join(errors), exit_code=2)
        return {"valid": True, "errors": []}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        from parcelfi.settlement.config import get_config_manager
        return get_config_manager().export_schema()

    # Quote handler
    def _handle_quote(self, args: argparse.Namespace) -> Any:
        from parcelfi.core import parse_iso8601, quantize_money, to_iso8601, utc_now
        from parcelfi.settlement.config import get_config
        from parcelfi.settlement.loans import compute_interest, elapsed_whole_months

        funded_at = parse_iso8601(args.funded_at)
        if funded_at is None:
            raise CLIError(f"invalid --funded-at timestamp: {args.funded_at}", exit_code=2)
        as_of = parse_iso8601(args.as_of) if args.as_of else utc_now()
        if as_of is None:
            raise CLIError(f"invalid --as-of timestamp: {args.as_of}", exit_code=2)

        months = elapsed_whole_months(funded_at, as_of, get_config().policy.days_per_month.get())
        interest = compute_interest(args.principal, args.rate_bps, months)
        return {
            "principal": str(args.principal),
            "rate_bps": args.rate_bps,
            "funded_at": to_iso8601(funded_at),
            "as_of": to_iso8601(as_of),
            "months_elapsed": months,
            "interest": str(interest),
            "total": str(quantize_money(args.principal + interest)),
        }

    # Demo handler
    def _handle_demo(self, args: argparse.Namespace) -> Any:
        return asyncio.run(self._run_demo(args.kind, args.principal, args.asset_value))

    async def _run_demo(self, kind: str, principal: Decimal, asset_value: Decimal) -> Dict[str, Any]:
        from parcelfi.integrations.ledger_topic import InMemoryLedgerTopic
        from parcelfi.integrations.mock_network import MockSettlementNetwork
        from parcelfi.proofs import SigningKey
        from parcelfi.settlement.config import get_config
        from parcelfi.settlement.engine import SettlementEngine
        from parcelfi.settlement.models import Account, Asset, LoanKind, LoanTerms
        from parcelfi.settlement.store import LendingStore

        config = get_config()
        store = LendingStore()
        network = MockSettlementNetwork()
        topic = InMemoryLedgerTopic()
        engine = SettlementEngine(
            store, network, ledger_client=topic, config=config, signing_key=SigningKey.generate(),
        )

        store.add_account(Account("borrower", settlement_account="0.0.1001"))
        store.add_account(Account("lender", settlement_account="0.0.2002"))
        store.add_asset(Asset("parcel-demo", "borrower", asset_value, custody_token_id="token-demo"))
        network.mint_token("token-demo", owner="0.0.1001")
        network.fund_account("0.0.1001", principal * 2)
        network.fund_account("0.0.2002", principal)

        if kind == LoanKind.EXPRESS.value:
            loan = await engine.open_express_loan("borrower", "parcel-demo", principal)
            loan = await engine.fund_loan(loan.loan_id)
        else:
            policy = config.policy
            terms = LoanTerms(
                principal=principal,
                rate_bps=policy.min_rate_bps.get(),
                duration_months=policy.min_duration_months.get(),
                collateral_ratio_bps=policy.max_ltv_bps.get(),
            )
            loan = await engine.open_loan("borrower", "parcel-demo", terms)
            loan = await engine.fund_loan(loan.loan_id, lender_id="lender")

        result = await engine.repay_loan(loan.loan_id, payer_id="borrower")
        await engine.drain()

        events = []
        for event in store.events_for_loan(loan.loan_id):
            mirror = store.mirror_record(event.event_id)
            events.append({
                "event_type": event.event_type.value,
                "event_id": event.event_id,
                "occurred_at": event.body()["occurred_at"],
                "mirror": mirror.status.value if mirror else None,
                "sequence_number": mirror.sequence_number if mirror else None,
            })
        return {
            "loan": result.loan.to_dict(),
            "quote": result.quote.to_dict(),
            "events": events,
            "custody_retries": engine.custody.retry_metrics.to_dict(),
        }


def main() -> int:
    """CLI entry point."""
    cli = LendingCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
