import argparse
import asyncio
import json
from datetime import timedelta

from ordercore import models  # noqa: F401  (registers every table on Base.metadata)
from ordercore.core import security
from ordercore.db.base import Base
from ordercore.db.session import SessionLocal, engine
from ordercore.services import loyalty, store_credit


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    print("Database schema created")


def issue_admin_token(subject: str, email: str | None, hours: int) -> str:
    if hours <= 0:
        raise SystemExit("--hours must be positive")
    return security.create_admin_token(subject, email=email, expires_delta=timedelta(hours=hours))


async def audit_store_credit() -> int:
    """Print one JSON line per account; returns the number of inconsistent accounts."""
    async with SessionLocal() as session:
        audits = await store_credit.audit_all(session)
    await engine.dispose()
    mismatches = 0
    for audit in audits:
        if not audit.consistent:
            mismatches += 1
        print(
            json.dumps(
                {
                    "email": audit.email,
                    "balance": str(audit.balance),
                    "ledger_balance": str(audit.ledger_balance),
                    "consistent": audit.consistent,
                }
            )
        )
    print(f"{len(audits)} accounts audited, {mismatches} inconsistent")
    return mismatches


async def seed_loyalty_tiers() -> int:
    async with SessionLocal() as session:
        created = await loyalty.seed_default_tiers(session)
    await engine.dispose()
    print(f"{created} loyalty tiers created")
    return created


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Order core operations")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init-db", help="Create all tables")

    token = subparsers.add_parser("admin-token", help="Issue an admin bearer token")
    token.add_argument("--subject", required=True, help="Admin user id")
    token.add_argument("--email", help="Admin email (optional)")
    token.add_argument("--hours", type=int, default=8, help="Token lifetime in hours")

    subparsers.add_parser("audit-store-credit", help="Check every store-credit balance against its ledger")
    subparsers.add_parser("seed-loyalty-tiers", help="Create the default loyalty tiers that are missing")
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "init-db":
        asyncio.run(init_db())
        return True

    if args.command == "admin-token":
        print(issue_admin_token(args.subject, args.email, args.hours))
        return True

    if args.command == "audit-store-credit":
        mismatches = asyncio.run(audit_store_credit())
        if mismatches:
            raise SystemExit(1)
        return True

    if args.command == "seed-loyalty-tiers":
        asyncio.run(seed_loyalty_tiers())
        return True

    return False


def main():
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
