"""Migration / setup helper
Brings the database schema to the latest alembic revision.
Run: python migrate.py [revision]
"""
import logging
import os
import sys

from alembic import command
from alembic.config import Config

from db import DATABASE_URL

ROOT = os.path.dirname(os.path.abspath(__file__))


def alembic_config(url: str = DATABASE_URL) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", os.path.join(ROOT, "alembic"))
    # configparser interpolation would choke on url-encoded passwords
    cfg.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    return cfg


def upgrade(url: str = DATABASE_URL, revision: str = "head") -> None:
    command.upgrade(alembic_config(url), revision)


def downgrade(url: str = DATABASE_URL, revision: str = "base") -> None:
    command.downgrade(alembic_config(url), revision)


def main():
    logging.basicConfig(level=logging.INFO)
    revision = sys.argv[1] if len(sys.argv) > 1 else "head"
    upgrade(revision=revision)
    print(f"Database upgraded to {revision}")


if __name__ == "__main__":
    main()
