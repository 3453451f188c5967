"""
opsdesk release step: migrate the schema to head, then seed permissions, roles and the admin user.

Run before serving (scripts/start.py does this):
  python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _database_url() -> str:
    url = (os.environ.get("DATABASE_URL") or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL must be set for the release step.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and url.startswith("sqlite"):
        raise RuntimeError("sqlite is not allowed in production; point DATABASE_URL at Postgres.")
    return url


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def run_release() -> None:
    db_url = _database_url()

    print("opsdesk release: alembic upgrade head", flush=True)
    migrate(db_url)

    # Seeding never resets an existing admin password.
    print("opsdesk release: seeding systems.* permissions and roles", flush=True)
    from scripts import init_db

    init_db.seed_only(database_url=db_url)
    print("opsdesk release: done", flush=True)


if __name__ == "__main__":
    run_release()
