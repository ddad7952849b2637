"""
Order Service — 注文イベント台帳

状態変更はすべて、その変更と同じトランザクションで台帳に追記する。
(order_id, version) の UNIQUE 制約による楽観的ロックで
同じバージョンへの二重書き込みを防ぐ。
"""

import json
from datetime import datetime, timezone

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


async def current_version(session: AsyncSession, order_id: str) -> int:
    result = await session.execute(
        text("SELECT COALESCE(MAX(version), 0) AS version FROM order_events WHERE order_id = :order_id"),
        {"order_id": order_id},
    )
    return int(result.scalar_one())


async def append_event(
    session: AsyncSession,
    order_id: str,
    event: BaseModel,
    expected_version: int | None = None,
) -> int:
    """
    イベントを台帳に追記する。

    expected_version を省略すると現在の最新バージョンを読んで使う。
    同じ order_id + version が既に存在すると UNIQUE 制約違反で失敗する。
    """
    if expected_version is None:
        expected_version = await current_version(session, order_id)
    new_version = expected_version + 1
    await session.execute(
        text("""
            INSERT INTO order_events
                (order_id, event_type, event_data, version, created_at)
            VALUES
                (:order_id, :event_type, :event_data, :version, :now)
        """),
        {
            "order_id": order_id,
            "event_type": type(event).__name__,
            "event_data": event.model_dump_json(),
            "version": new_version,
            "now": datetime.now(timezone.utc),
        },
    )
    return new_version


def _row_to_event(row) -> dict:
    return {
        "order_id": row.order_id,
        "event_type": row.event_type,
        "event_data": json.loads(row.event_data) if isinstance(row.event_data, str) else row.event_data,
        "version": row.version,
        "created_at": row.created_at.isoformat() if isinstance(row.created_at, datetime) else row.created_at,
    }


async def load_events(session: AsyncSession, order_id: str) -> list[dict]:
    """指定した注文の全イベントをバージョン順に読み出す。"""
    result = await session.execute(
        text("""
            SELECT order_id, event_type, event_data, version, created_at
            FROM order_events
            WHERE order_id = :order_id
            ORDER BY version ASC
        """),
        {"order_id": order_id},
    )
    return [_row_to_event(row) for row in result.fetchall()]
