"""Apply pending SQL migrations from backend/infra/migrations in order.

Usage: python backend/scripts/apply_migrations.py [--dsn postgresql://...]
"""

import argparse
import asyncio
import logging
from pathlib import Path

import asyncpg

from chatwire.obs.logging import configure_logging
from chatwire.settings import settings

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "infra" / "migrations"

logger = logging.getLogger("chatwire.migrations")


async def apply_all(dsn: str) -> list[str]:
	conn = await asyncpg.connect(dsn)
	applied: list[str] = []
	try:
		await conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS schema_migrations (
				version TEXT PRIMARY KEY,
				applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
			)
			"""
		)
		done = {row["version"] for row in await conn.fetch("SELECT version FROM schema_migrations")}
		for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
			version = path.stem
			if version in done:
				continue
			logger.info("applying migration %s", version)
			async with conn.transaction():
				await conn.execute(path.read_text(encoding="utf-8"))
				await conn.execute("INSERT INTO schema_migrations (version) VALUES ($1)", version)
			applied.append(version)
	finally:
		await conn.close()
	return applied


def main() -> None:
	parser = argparse.ArgumentParser(description=__doc__)
	parser.add_argument("--dsn", default=settings.postgres_url)
	args = parser.parse_args()
	configure_logging()
	applied = asyncio.run(apply_all(args.dsn))
	logger.info("migrations complete", extra={"applied": applied})


if __name__ == "__main__":
	main()
