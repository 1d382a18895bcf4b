"""Slack Web API integration for human-intervention requests."""

import logging
from dataclasses import dataclass

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
        logger.warning("Slack API error posting to %s: %s", channel, e.response["error"])
        raise SlackError(f"Slack API error: {e.response['error']}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_escalation_notification(
    task_id: str,
    title: str,
    agent_id: str,
    reason: str,
    level: int,
) -> list[dict]:
    """Format a human-intervention request as Slack blocks."""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":rotating_light: *Human intervention needed* (level {level})\n"
                    f"*{title}* (`{task_id}`)\n"
                    f"Agent: `{agent_id}`\n"
                    f"Reason: {reason}"
                ),
            },
        }
    ]


def slack_notifier(token: str | None, channel: str | None):
    """Build an escalation notifier that posts to Slack.

    Returns None when Slack is not configured, so callers can pass the
    result straight to an EscalationPolicy.
    """
    if not token or not channel:
        return None

    def notify(task, record):
        blocks = format_escalation_notification(
            task.id, task.title, record.agent_id, record.reason, int(record.level)
        )
        send_message(token, channel, f"Human intervention needed: {task.title}", blocks=blocks)
        logger.info("Requested human intervention for task %s in %s", task.id, channel)

    return notify
