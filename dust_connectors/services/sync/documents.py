from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from dust_connectors.providers.slack.client import SlackClient, SlackMessage


@dataclass(frozen=True)
class WeekWindow:
    start: datetime
    end: datetime

    @property
    def oldest_ts(self) -> str:
        return f"{self.start.timestamp():.6f}"

    @property
    def latest_ts(self) -> str:
        return f"{self.end.timestamp():.6f}"


@dataclass(frozen=True)
class RenderedDocument:
    document_id: str
    text: str
    source_url: str
    timestamp_ms: int
    tags: list[str]
    parents: list[str]
    # Newest Slack ts covered by the document.
    latest_ts: str


def ts_to_datetime(ts: str) -> datetime:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def week_window(ts: str) -> WeekWindow:
    # Weeks start on Monday 00:00 UTC and end right before the next Monday.
    moment = ts_to_datetime(ts)
    start = (moment - timedelta(days=moment.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
    return WeekWindow(start=start, end=start + timedelta(days=7))


def thread_document_id(channel_id: str, thread_ts: str) -> str:
    return f"slack-{channel_id}-thread-{thread_ts}"


def week_document_id(channel_id: str, window: WeekWindow) -> str:
    start = window.start.strftime("%Y-%m-%d")
    end = (window.end - timedelta(days=1)).strftime("%Y-%m-%d")
    return f"slack-{channel_id}-messages-{start}-{end}"


def channel_url(team_id: str, channel_id: str) -> str:
    return f"https://app.slack.com/client/{team_id}/{channel_id}"


def thread_url(team_id: str, channel_id: str, thread_ts: str) -> str:
    return f"{channel_url(team_id, channel_id)}/thread/{channel_id}-{thread_ts}"


async def _render_lines(client: SlackClient, messages: list[SlackMessage]) -> str:
    lines: list[str] = []
    for message in sorted(messages, key=lambda m: float(m.ts)):
        author = await client.get_user_name(message.user) if message.user else "unknown"
        when = ts_to_datetime(message.ts).strftime("%Y-%m-%d %H:%M:%S")
        lines.append(f">> @{author} [{when}]:\n{message.text}\n")
    return "\n".join(lines)


async def render_thread(
    client: SlackClient,
    *,
    team_id: str,
    channel_id: str,
    channel_name: str,
    thread_ts: str,
    messages: list[SlackMessage],
) -> RenderedDocument:
    latest = max(messages, key=lambda m: float(m.ts)).ts if messages else thread_ts
    return RenderedDocument(
        document_id=thread_document_id(channel_id, thread_ts),
        text=await _render_lines(client, messages),
        source_url=thread_url(team_id, channel_id, thread_ts),
        timestamp_ms=int(float(latest) * 1000),
        tags=[f"channelId:{channel_id}", f"channelName:{channel_name}", f"threadId:{thread_ts}"],
        parents=[channel_id],
        latest_ts=latest,
    )


async def render_week(
    client: SlackClient,
    *,
    team_id: str,
    channel_id: str,
    channel_name: str,
    window: WeekWindow,
    messages: list[SlackMessage],
) -> RenderedDocument:
    latest = max(messages, key=lambda m: float(m.ts)).ts if messages else window.oldest_ts
    return RenderedDocument(
        document_id=week_document_id(channel_id, window),
        text=await _render_lines(client, messages),
        source_url=channel_url(team_id, channel_id),
        timestamp_ms=int(float(latest) * 1000),
        tags=[f"channelId:{channel_id}", f"channelName:{channel_name}"],
        parents=[channel_id],
        latest_ts=latest,
    )
