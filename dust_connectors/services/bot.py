from __future__ import annotations

import logging
import re
import time
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from dust_connectors.core.config import get_settings
from dust_connectors.core.errors import ConnectorsError, NotFoundError
from dust_connectors.core.result import Err, Ok, Result
from dust_connectors.domain.models import ChatBotMessage, Connector
from dust_connectors.persistence.db import SessionLocal
from dust_connectors.persistence.repos import bot_messages as bot_messages_repo
from dust_connectors.persistence.repos import connectors as connectors_repo
from dust_connectors.providers import factory
from dust_connectors.providers.dust_api import ChatMessageCreate, ChatMessageTokens, ChatSessionUpdate
from dust_connectors.providers.slack.client import SlackClient


logger = logging.getLogger(__name__)

_MENTION = re.compile(r"<@([A-Z0-9-]+)>")
THINKING_MESSAGE = "_I am thinking..._"
GENERIC_ERROR_MESSAGE = (
    "An error occured. Our team has been notified and will work on it as soon as possible."
)


class SlackExternalUserError(ConnectorsError):
    """The mentioning user is not a member of the installing workspace."""


async def get_bot_enabled(session: AsyncSession, connector_id: str) -> Result[bool]:
    configuration = await connectors_repo.get_slack_configuration(session, connector_id)
    if configuration is None:
        return Err(NotFoundError(f"Failed to find a Slack configuration for connector {connector_id}"))
    return Ok(configuration.bot_enabled)


async def toggle_bot(session: AsyncSession, connector_id: str, bot_enabled: bool) -> Result[bool]:
    configuration = await connectors_repo.get_slack_configuration(session, connector_id)
    if configuration is None:
        return Err(NotFoundError(f"Failed to find a Slack configuration for connector {connector_id}"))
    configuration.bot_enabled = bot_enabled
    await session.commit()
    logger.info("slack_bot_toggled connector_id=%s bot_enabled=%s", connector_id, bot_enabled)
    return Ok(bot_enabled)


async def rewrite_mentions(client: SlackClient, text: str) -> str:
    # Drop the bot's own mention and replace other user ids by display names.
    user_ids = _MENTION.findall(text)
    if not user_ids:
        return text
    bot_user_id = await client.get_bot_user_id()
    for user_id in dict.fromkeys(user_ids):
        mention = f"<@{user_id}>"
        if user_id == bot_user_id:
            text = text.replace(mention, "")
        else:
            text = text.replace(mention, f"@{await client.get_user_name(user_id)}")
    return text.strip()


async def _answer(
    connector: Connector,
    client: SlackClient,
    row: ChatBotMessage,
    *,
    team_id: str,
    channel_id: str,
    user_id: str,
    message_ts: str,
    text: str,
    clock: Callable[[], float],
) -> Result[str]:
    settings = get_settings()
    user = await client.user_info(user_id)
    profile = user.get("profile") or {}
    if profile.get("team") != team_id:
        return Err(
            SlackExternalUserError(
                "Hi there. Sorry, but I can only answer to members of the workspace where I am installed."
            )
        )
    async with SessionLocal() as session:
        row = await session.merge(row)
        row.slack_email = profile.get("email") or ""
        row.slack_user_name = profile.get("display_name") or ""
        await session.commit()

    main_ts = await client.post_message(channel_id, THINKING_MESSAGE, thread_ts=message_ts)
    message = await rewrite_mentions(client, text)
    dust = factory.get_dust_api(connector)
    try:
        full_answer = ""
        last_sent = clock()
        async for event in dust.new_chat_streamed(message, user.get("tz") or settings.bot_default_timezone):
            if isinstance(event, ChatMessageCreate):
                if event.role == "error":
                    return Err(ConnectorsError(event.message))
            elif isinstance(event, ChatMessageTokens):
                full_answer += event.text
                # Throttle Slack updates while tokens stream in.
                if clock() - last_sent < settings.bot_update_interval_s:
                    continue
                last_sent = clock()
                await client.update_message(channel_id, main_ts, full_answer, thread_ts=message_ts)
            elif isinstance(event, ChatSessionUpdate):
                final_answer = (
                    f"{full_answer}\n\n <{dust.conversation_url(event.session_sid)}|Continue this conversation on Dust>"
                )
                await client.update_message(channel_id, main_ts, final_answer, thread_ts=message_ts)
                async with SessionLocal() as session:
                    row = await session.merge(row)
                    await bot_messages_repo.complete_bot_message(session, row, chat_session_sid=event.session_sid)
                    await session.commit()
                return Ok(event.session_sid)
        return Err(ConnectorsError("Failed to get the final answer from Dust"))
    finally:
        await dust.aclose()


async def _answer_and_report(
    connector: Connector,
    client: SlackClient,
    row: ChatBotMessage,
    *,
    team_id: str,
    channel_id: str,
    user_id: str,
    message_ts: str,
    text: str,
    clock: Callable[[], float],
) -> Result[str]:
    try:
        result = await _answer(
            connector,
            client,
            row,
            team_id=team_id,
            channel_id=channel_id,
            user_id=user_id,
            message_ts=message_ts,
            text=text,
            clock=clock,
        )
    except ConnectorsError as exc:
        result = Err(exc)

    if result.is_err():
        logger.error(
            "slack_bot_answer_failed team_id=%s channel_id=%s user_id=%s message_ts=%s error=%s",
            team_id,
            channel_id,
            user_id,
            message_ts,
            result.error,
        )
        reply = str(result.error) if isinstance(result.error, SlackExternalUserError) else GENERIC_ERROR_MESSAGE
        await client.post_message(channel_id, reply, thread_ts=message_ts)
    else:
        logger.info(
            "slack_bot_answer_done team_id=%s channel_id=%s user_id=%s message_ts=%s",
            team_id,
            channel_id,
            user_id,
            message_ts,
        )
    return result


async def answer_bot_message(
    *,
    team_id: str,
    channel_id: str,
    user_id: str,
    message_ts: str,
    text: str,
    clock: Callable[[], float] = time.monotonic,
) -> Result[str]:
    """Answer an app mention in its thread, streaming the assistant reply."""
    async with SessionLocal() as session:
        configurations = await connectors_repo.list_slack_configurations_for_team(session, team_id, bot_enabled=True)
        if not configurations:
            return Err(
                NotFoundError(f"Failed to find a Slack configuration for which the bot is enabled. Slack team id: {team_id}.")
            )
        connector = await connectors_repo.get_connector(session, configurations[0].connector_id)
        if connector is None:
            return Err(NotFoundError("Failed to find connector"))
        row = await bot_messages_repo.create_bot_message(
            session,
            connector_id=connector.id,
            channel_id=channel_id,
            message_ts=message_ts,
            message=text,
            slack_user_id=user_id,
        )
        await session.commit()

    client = await factory.slack_client_for_connector(connector)
    try:
        return await _answer_and_report(
            connector,
            client,
            row,
            team_id=team_id,
            channel_id=channel_id,
            user_id=user_id,
            message_ts=message_ts,
            text=text,
            clock=clock,
        )
    finally:
        await client.aclose()
