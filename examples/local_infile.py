import logging
import asyncio

from mysql_wire import connect


async def read_file(filename):
    # Only serve files this program expects the server to ask for
    if filename != "people.csv":
        raise PermissionError(filename)
    return b"1,levon\n2,rick\n3,garth\n"


async def main():
    logging.basicConfig(level=logging.INFO)
    conn = await connect(
        user="root",
        password="password",
        db_name="test",
        local_infile_handler=read_file,
    )
    async with conn:
        await conn.query("CREATE TABLE IF NOT EXISTS people (id INT, name TEXT)")
        result = await conn.query(
            "LOAD DATA LOCAL INFILE 'people.csv' INTO TABLE people "
            "FIELDS TERMINATED BY ','"
        )
        print(f"Loaded {result.affected_rows} rows")


if __name__ == "__main__":
    asyncio.run(main())
