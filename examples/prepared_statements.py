import logging
import asyncio
from datetime import datetime

from mysql_wire import Opts, connect


async def main():
    logging.basicConfig(level=logging.INFO)
    opts = Opts(user="root", password="password", db_name="test", stmt_cache_size=8)
    async with await connect(opts) as conn:
        await conn.query(
            "CREATE TABLE IF NOT EXISTS events (id INT PRIMARY KEY, at DATETIME)"
        )
        for i in range(3):
            # Prepared once, then served from the statement cache
            result = await conn.execute(
                "REPLACE INTO events VALUES (?, ?)", [i, datetime.now()]
            )
            print(f"Affected rows: {result.affected_rows}")

        result = await conn.execute("SELECT id, at FROM events WHERE id >= ?", [1])
        async for row in result:
            print(row)


if __name__ == "__main__":
    asyncio.run(main())
