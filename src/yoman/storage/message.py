import yoman.storage.db_config as db_config
from yoman.logger import logger
from ulid import ULID
import json
from typing import Any

__all__ = [
    "create_message",
    "get_recent_messages_by_user_id",
]


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


def _loads_metadata(raw_metadata: str | None) -> dict[str, Any] | None:
    if raw_metadata is None or raw_metadata.strip() == "":
        return None
    try:
        loaded = json.loads(raw_metadata)
    except json.JSONDecodeError:
        logger.warning("消息 metadata 解析失败，已忽略")
        return None
    return loaded if isinstance(loaded, dict) else None


async def create_message(
    user_id: str,
    channel: str,
    role: str,
    content: str,
    metadata: dict[str, Any] | None = None,
) -> str:
    """创建新消息记录，返回消息 ID"""
    _ensure_conn()
    if role not in ("system", "world", "user", "assistant"):
        logger.error(f"无效的消息角色: {role}, 该消息不会存入数据库")
        return ""

    message_id = str(ULID())
    metadata_json = json.dumps(metadata, ensure_ascii=False) if metadata is not None else None
    await db_config.conn.execute(
        "INSERT INTO messages (message_id, user_id, channel, metadata, role, content) VALUES (?, ?, ?, ?, ?, ?)",
        (message_id, user_id, channel, metadata_json, role, content)
    )
    await db_config.conn.commit()
    return message_id


async def get_recent_messages_by_user_id(user_id: str, limit: int = 30) -> list[dict]:
    """获取某个用户最近的消息记录，按 ULID 倒序"""
    _ensure_conn()
    messages = []
    async with db_config.conn.execute(
        (
            "SELECT message_id, channel, metadata, role, content, created_at_utc "
            "FROM messages WHERE user_id = ? ORDER BY message_id DESC LIMIT ?"
        ),
        (user_id, limit)
    ) as cursor:
        async for row in cursor:
            messages.append({
                "message_id": row[0],
                "channel": row[1],
                "metadata": _loads_metadata(row[2]),
                "role": row[3],
                "content": row[4],
                "created_at_utc": row[5],
            })
    return messages
