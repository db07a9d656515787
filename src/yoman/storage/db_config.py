import aiosqlite
import os

from yoman.logger import logger


conn: aiosqlite.Connection | None = None

_SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS documents (
    doc_key TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    body TEXT NOT NULL,
    updated_at_utc TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    display_name TEXT,
    telegram_chat_id INTEGER,
    created_at_utc TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS messages (
    message_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    channel TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at_utc TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""


async def _column_exists(table: str, column: str) -> bool:
    async with conn.execute(f"PRAGMA table_info({table})") as cursor:
        async for row in cursor:
            if row[1] == column:
                return True
    return False


async def init_db(db_path: str) -> None:
    global conn
    if db_path != ":memory:":
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)
    conn = await aiosqlite.connect(db_path)

    async with conn.execute("PRAGMA user_version") as cursor:
        row = await cursor.fetchone()
        user_version = row[0]

    if user_version == 0:
        await conn.executescript(_SCHEMA_V1)
        await conn.execute("PRAGMA user_version = 1")

    if user_version < 2:
        if not await _column_exists("messages", "metadata"):
            await conn.execute("ALTER TABLE messages ADD COLUMN metadata TEXT")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_user_id ON messages (user_id, message_id)")
        await conn.execute("PRAGMA user_version = 2")

    # 数据库升级逻辑可以在这里继续添加
    await conn.commit()
    logger.debug(f"数据库已就绪: path={db_path}, from_version={user_version}")


async def close_db() -> None:
    global conn
    if conn is not None:
        await conn.close()
        conn = None


__all__ = ["conn", "init_db", "close_db"]
