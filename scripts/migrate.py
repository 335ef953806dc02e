#!/usr/bin/env python3
"""Database migration script - creates all tables.

For versioned migrations use `alembic upgrade head` instead.
"""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from custody.config import get_settings
from custody.ledger.database import Database


async def main():
    """Create every ledger table that does not exist yet."""
    settings = get_settings()
    database = Database(settings.async_database_url)

    print(f"Database URL: {settings.get_safe_dict()['database_url']}")
    print("Creating database tables...")

    try:
        await database.create_all()
        print("Database tables created successfully!")
    finally:
        await database.dispose()


if __name__ == "__main__":
    asyncio.run(main())
