#!/usr/bin/env python3
"""
Operator commands for a review engine database.

Subcommands:
  init-db          Create every table.
  seed-templates   Register the templates of a configuration set; templates
                   whose name and version already exist are skipped.
  sweep            Expire overdue commitments and advance activities whose
                   stage deadline has passed.  Meant to run from cron.
  check-ledger     Verify ledger conservation; exits 1 when it fails.
  issue            Issue tokens from the treasury to a user's wallet.

Usage:
  python3 scripts/review_ops.py --database-url sqlite:///review.db init-db
  python3 scripts/review_ops.py seed-templates --config-set default
  python3 scripts/review_ops.py sweep

The database URL comes from --database-url or the DATABASE_URL environment
variable.
"""

import argparse
import os
import sys
from pathlib import Path
from uuid import UUID

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from review_config import DEFAULT_SET, get_active_config  # noqa: E402
from review_config.bridges import template_specs, to_engine_options  # noqa: E402
from review_kernel.db.engine import (  # noqa: E402
    create_tables,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from review_kernel.db.immutability import register_immutability_listeners  # noqa: E402
from review_kernel.exceptions import TemplateNotFoundError  # noqa: E402
from review_kernel.services.review_engine import ReviewEngine  # noqa: E402

# Registered templates and ledger postings made by this script carry this actor
OPERATOR_ID = UUID("00000000-0000-4000-8000-0000000000f0")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Review engine operator commands")
    p.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="SQLAlchemy database URL (default: $DATABASE_URL)",
    )
    p.add_argument(
        "--config-set",
        default=DEFAULT_SET,
        help=f"Configuration set under review_config/sets (default: {DEFAULT_SET!r})",
    )
    p.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory holding configuration sets (default: review_config/sets)",
    )
    sub = p.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db", help="Create all tables")
    sub.add_parser("seed-templates", help="Register the configuration set's templates")
    sub.add_parser("sweep", help="Run one deadline sweep")
    sub.add_parser("check-ledger", help="Verify ledger conservation")
    issue = sub.add_parser("issue", help="Issue tokens from the treasury")
    issue.add_argument("--user", type=UUID, required=True, help="Receiving user id")
    issue.add_argument("--amount", type=int, required=True, help="Whole tokens to issue")
    return p.parse_args(argv)


def seed_templates(engine: ReviewEngine, config) -> list[str]:
    """Register missing templates; returns the names registered."""
    registered = []
    for spec in template_specs(config):
        try:
            engine.find_template(spec.name, spec.version)
            print(f"  skip  {spec.name} v{spec.version} (already registered)")
            continue
        except TemplateNotFoundError:
            pass
        template_id = engine.register_template(spec, OPERATOR_ID)
        registered.append(spec.name)
        print(f"  added {spec.name} v{spec.version} -> {template_id}")
    return registered


def run_sweep(engine: ReviewEngine) -> int:
    report = engine.run_sweep()
    print(f"  expired memberships: {len(report.expired_memberships)}")
    print(f"  activities advanced: {len(report.advanced)}")
    for result in report.advanced:
        print(f"    {result.activity_id} -> {result.stage_key}")
    for failure in report.failures:
        print(f"  FAILED {failure.activity_id}: {failure.error_code} ({failure.error_kind.value})")
    return 1 if report.failures else 0


def check_ledger(engine: ReviewEngine) -> int:
    report = engine.verify_conservation()
    print(f"  ledger total: {report.ledger_total}")
    for label, ids in (
        ("negative accounts", report.negative_accounts),
        ("escrow mismatches", report.escrow_mismatches),
        ("escrow out of bounds", report.escrow_out_of_bounds),
    ):
        if ids:
            print(f"  {label}: {', '.join(str(i) for i in ids)}")
    print("  OK" if report.is_conserved else "  NOT CONSERVED")
    return 0 if report.is_conserved else 1


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    if not args.database_url:
        print("error: no database URL (use --database-url or set DATABASE_URL)", file=sys.stderr)
        return 2

    config = get_active_config(args.config_set, args.config_dir)
    init_engine_from_url(args.database_url)
    register_immutability_listeners()
    try:
        if args.command == "init-db":
            create_tables()
            print("  tables created")
            return 0

        with session_scope() as session:
            engine = ReviewEngine(
                session,
                to_engine_options(config.engine),
                lock_timeout_seconds=config.engine.lock_timeout_seconds,
            )
            if args.command == "seed-templates":
                seed_templates(engine, config)
                return 0
            if args.command == "sweep":
                return run_sweep(engine)
            if args.command == "check-ledger":
                return check_ledger(engine)
            if args.command == "issue":
                result = engine.issue_tokens(args.user, args.amount, OPERATOR_ID)
                if not result.is_success:
                    print(f"  FAILED: {result.error_code}: {result.reason}", file=sys.stderr)
                    return 1
                print(f"  issued {args.amount} -> balance {result.new_balances.get(args.user)}")
                return 0
    finally:
        reset_engine()
    return 2


if __name__ == "__main__":
    sys.exit(main())
