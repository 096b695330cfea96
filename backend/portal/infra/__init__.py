"""Infrastructure adapters: Postgres, Redis, auth and migrations."""
