from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from dust_connectors.domain.models import ChatBotMessage


async def create_bot_message(
    session: AsyncSession,
    *,
    connector_id: str,
    channel_id: str,
    message_ts: str | None,
    message: str,
    slack_user_id: str,
) -> ChatBotMessage:
    row = ChatBotMessage(
        connector_id=connector_id,
        channel_id=channel_id,
        message_ts=message_ts,
        message=message,
        slack_user_id=slack_user_id,
        slack_email="",
        slack_user_name="",
    )
    session.add(row)
    await session.flush()
    return row


async def complete_bot_message(session: AsyncSession, row: ChatBotMessage, *, chat_session_sid: str) -> None:
    row.chat_session_sid = chat_session_sid
    row.completed_at = datetime.now(timezone.utc)
    await session.flush()
