"""Slack Web API integration for escalation notices."""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from coe_orchestrator.db.models import Ticket

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    from slack_sdk.errors import SlackApiError

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response['error']}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_escalation(ticket: Ticket) -> list[dict]:
    """Format an escalation ticket as Slack blocks."""
    emoji = ":rotating_light:" if ticket.priority == 1 else ":warning:"
    description = ticket.description
    if len(description) > 500:
        description = description[:500] + "..."
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *{ticket.title}*\n`{ticket.id}` | P{ticket.priority} | {ticket.status.value}",
            },
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": description or "_No details_"},
        },
    ]


def escalation_notifier(token: str | None, channel: str | None) -> Callable[[Ticket], None] | None:
    """Build a callback that posts escalation tickets, or None when Slack is not configured."""
    if not token or not channel:
        return None

    def notify(ticket: Ticket) -> None:
        message = send_message(token, channel, ticket.title, format_escalation(ticket))
        logger.info("Posted escalation %s to %s (ts=%s)", ticket.id, message.channel, message.ts)

    return notify
