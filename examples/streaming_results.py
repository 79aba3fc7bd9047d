import logging
import asyncio

from mysql_wire import connect


async def main():
    logging.basicConfig(level=logging.DEBUG)
    conn = await connect(user="root", password="password")
    try:
        # Rows are read from the socket as they are iterated
        result = await conn.query(
            "SELECT * FROM information_schema.columns "
            "CROSS JOIN (SELECT 1 UNION SELECT 2) t"
        )
        count = 0
        async for _ in result:
            count += 1
            if count % 1000 == 0:
                logging.info("Read %s rows so far...", count)
        logging.info("Read %s rows", count)

        async for result in conn.iter_results("SELECT 1; SELECT 2, 3"):
            print(await result.fetchall())
    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(main())
