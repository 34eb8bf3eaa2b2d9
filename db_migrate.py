from __future__ import annotations

"""Manual DB migration helper.

Usage: python db_migrate.py [path]   (defaults to the configured db_path)
"""

import asyncio
import logging
import sys

from abcjournal.config import load_config
from abcjournal.db import connect_db, get_user_version


async def migrate(path: str) -> int:
    conn = await connect_db(path)
    try:
        return await get_user_version(conn)
    finally:
        await conn.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    target = sys.argv[1] if len(sys.argv) > 1 else str(load_config()["db_path"])
    version = asyncio.run(migrate(target))
    print(f"{target}: schema v{version}")
