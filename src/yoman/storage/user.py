import yoman.storage.db_config as db_config
from yoman.datamodel import UserInfo
from yoman.logger import logger

__all__ = ["create_user_if_not_exists", "get_user_by_id", "get_display_name"]


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


def _row_to_user(row) -> UserInfo:
    return UserInfo(
        user_id=row[0],
        display_name=row[1],
        telegram_chat_id=row[2],
        created_at_utc=row[3],
    )


async def create_user_if_not_exists(
    user_id: str,
    display_name: str | None = None,
    telegram_chat_id: int | None = None,
) -> UserInfo:
    """如果用户不存在则创建新用户; 已存在时补全显示名"""
    _ensure_conn()
    user = await get_user_by_id(user_id)
    if user is None:
        logger.info(f"创建新用户: user_id={user_id}, display_name={display_name}")
        await db_config.conn.execute(
            "INSERT INTO users (user_id, display_name, telegram_chat_id) VALUES (?, ?, ?)",
            (user_id, display_name, telegram_chat_id),
        )
        await db_config.conn.commit()
    elif display_name and user.display_name != display_name:
        await db_config.conn.execute(
            "UPDATE users SET display_name = ? WHERE user_id = ?",
            (display_name, user_id),
        )
        await db_config.conn.commit()
    return await get_user_by_id(user_id)


async def get_user_by_id(user_id: str) -> UserInfo | None:
    """通过用户 ID 获取用户信息"""
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT user_id, display_name, telegram_chat_id, created_at_utc FROM users WHERE user_id = ?",
        (user_id,),
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_user(row) if row else None


async def get_display_name(user_id: str) -> str:
    """用于提醒模板与预约标题, 未登记显示名时回退为 ID"""
    user = await get_user_by_id(user_id)
    if user is not None and user.display_name:
        return user.display_name
    return str(user_id)
