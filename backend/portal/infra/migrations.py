"""Apply the SQL files under infra/migrations in order, once each."""

from __future__ import annotations

import logging
import pathlib
from typing import List

import asyncpg

MIGRATIONS_DIR = pathlib.Path(__file__).resolve().parent / "migrations"

_LOG = logging.getLogger(__name__)


def migration_files() -> List[pathlib.Path]:
	return sorted(MIGRATIONS_DIR.glob("*.sql"))


async def apply_migrations(pool: asyncpg.pool.Pool) -> List[str]:
	"""Apply pending migrations and return the versions applied by this call."""
	applied_now: List[str] = []
	async with pool.acquire() as conn:
		await conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS schema_migrations (
				version TEXT PRIMARY KEY,
				applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
			)
			"""
		)
		rows = await conn.fetch("SELECT version FROM schema_migrations")
		applied = {row["version"] for row in rows}
		for path in migration_files():
			version = path.name.split("_", 1)[0]
			if version in applied:
				continue
			async with conn.transaction():
				await conn.execute(path.read_text())
				await conn.execute(
					"INSERT INTO schema_migrations (version) VALUES ($1) ON CONFLICT (version) DO NOTHING",
					version,
				)
			_LOG.info("migration_applied", extra={"version": version, "file": path.name})
			applied_now.append(version)
	return applied_now
