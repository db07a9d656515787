"""版本化文档存储

每个集合 (提醒、服务类别、营业时间) 以一整份 JSON 文档保存, 读写均为整份替换。
写入必须携带读取时的版本号, 版本不一致说明期间有其他写入者, 抛出 VersionConflictError,
由 update_document 重新执行 "读取 -> 修改 -> 写入" 整个流程。
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import yoman.storage.db_config as db_config
from yoman.logger import logger

__all__ = [
    "VersionedDocument", "VersionConflictError",
    "get_document", "set_document", "update_document",
    "MAX_UPDATE_ATTEMPTS",
]

T = TypeVar("T")

MAX_UPDATE_ATTEMPTS = 5


@dataclass
class VersionedDocument:
    key: str
    version: int  # 0 表示文档尚不存在
    body: Any


class VersionConflictError(RuntimeError):
    def __init__(self, key: str, expected_version: int) -> None:
        super().__init__(f"文档版本冲突: key={key}, expected_version={expected_version}")
        self.key = key
        self.expected_version = expected_version


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


async def get_document(key: str, default: Any = None) -> VersionedDocument:
    """读取文档; 不存在时返回 version=0 与 default 的副本"""
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT version, body FROM documents WHERE doc_key = ?", (key,)
    ) as cursor:
        row = await cursor.fetchone()

    if row is None:
        return VersionedDocument(key=key, version=0, body=copy.deepcopy(default))

    try:
        body = json.loads(row[1])
    except json.JSONDecodeError:
        logger.error(f"文档内容解析失败, 按空文档处理: key={key}")
        body = copy.deepcopy(default)
    return VersionedDocument(key=key, version=row[0], body=body)


async def set_document(key: str, body: Any, expected_version: int) -> int:
    """写入整份文档, 返回新版本号"""
    _ensure_conn()
    payload = json.dumps(body, ensure_ascii=False)

    if expected_version == 0:
        cursor = await db_config.conn.execute(
            "INSERT OR IGNORE INTO documents (doc_key, version, body) VALUES (?, 1, ?)",
            (key, payload),
        )
    else:
        cursor = await db_config.conn.execute(
            "UPDATE documents SET version = version + 1, body = ?, updated_at_utc = CURRENT_TIMESTAMP "
            "WHERE doc_key = ? AND version = ?",
            (payload, key, expected_version),
        )
    changed = cursor.rowcount
    await cursor.close()
    await db_config.conn.commit()

    if changed == 0:
        raise VersionConflictError(key, expected_version)

    logger.trace(f"写入文档: key={key}, version={expected_version + 1}")
    return expected_version + 1


async def update_document(
    key: str,
    mutate: Callable[[Any], T],
    default: Any = None,
    max_attempts: int = MAX_UPDATE_ATTEMPTS,
) -> T:
    """读取最新文档并原地修改后写回, 版本冲突时整体重试

    mutate 接收文档内容 (可原地修改), 其返回值作为本函数的返回值;
    mutate 抛出的异常会直接向上传播, 此时不写入任何内容。
    """
    for attempt in range(1, max_attempts + 1):
        doc = await get_document(key, default)
        body = doc.body
        result = mutate(body)
        try:
            await set_document(key, body, doc.version)
            return result
        except VersionConflictError:
            if attempt >= max_attempts:
                logger.error(f"文档写入冲突且超过重试次数: key={key}, attempts={attempt}")
                raise
            logger.debug(f"文档写入冲突, 重新读取后重试: key={key}, attempt={attempt}/{max_attempts}")

    raise VersionConflictError(key, -1)
