import os
from typing import Dict, Any, Optional
from loguru import logger
from slack_sdk.web import WebClient
from slack_sdk.errors import SlackApiError

STAGE_EMOJI = {
    "Disbursed": "💰",
    "Rejected": "⛔",
}


class SlackNotifier:
    """Posts pipeline milestones and sync outages to Slack; subscribe it to a LeadReconciler."""

    def __init__(self, token: Optional[str] = None, channel: Optional[str] = None):
        self.token = token if token is not None else os.getenv("SLACK_BOT_TOKEN")
        self.default_channel = channel or os.getenv("SLACK_DEFAULT_CHANNEL", "#loan-pipeline")

        if not self.token:
            logger.warning("No Slack token provided, using mock mode")

    def __call__(self, event: str, payload: Dict[str, Any]) -> Optional[str]:
        """Reconciler subscriber entry point."""
        if event == "transitioned" and payload.get("to") in STAGE_EMOJI:
            return self.send_stage_notification(payload["lead"], payload["from"], payload["to"])
        if event == "submitted" and payload["lead"].get("priority") in ("URGENT", "HIGH_NET"):
            return self.send_priority_alert(payload["lead"])
        if event == "sync_failed":
            return self.send_sync_alert(payload.get("error"), payload.get("cached", 0))
        return None

    def _post(self, message: Dict[str, Any], channel: Optional[str] = None) -> Optional[str]:
        target_channel = channel or self.default_channel
        if not self.token:
            logger.info(f"Mock mode: would post to {target_channel}: {message['text']}")
            return "mock_timestamp_123"

        try:
            client = WebClient(token=self.token)
            response = client.chat_postMessage(
                channel=target_channel,
                text=message["text"],
                blocks=message["blocks"]
            )
            message_ts = response["ts"]
            logger.info(f"Slack notification sent to {target_channel}: {message_ts}")
            return message_ts
        except SlackApiError as e:
            logger.error(f"Slack notification failed: {e}")
            return None

    def send_stage_notification(self, lead: Dict[str, Any], from_status: str, to_status: str,
                                channel: Optional[str] = None) -> Optional[str]:
        """
        Announce a lead reaching a final stage.

        Returns:
            Slack message timestamp or None if failed
        """
        return self._post(self._build_stage_message(lead, from_status, to_status), channel)

    def send_priority_alert(self, lead: Dict[str, Any], channel: Optional[str] = None) -> Optional[str]:
        """Alert the team about a newly submitted URGENT / HIGH_NET lead."""
        text = f"🚨 {lead.get('priority')} lead: {lead.get('client')} ({lead.get('product_type')}, ₹{lead.get('amount')})"
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"🚨 {lead.get('priority')} LEAD SUBMITTED"}
            },
            {
                "type": "section",
                "fields": self._lead_fields(lead)
            }
        ]
        return self._post({"text": text, "blocks": blocks}, channel)

    def send_sync_alert(self, error: Optional[str], cached: int, channel: Optional[str] = None) -> Optional[str]:
        """Warn that the pipeline is offline and serving stale data."""
        text = f"⚠️ Lead sync failed: {error or 'unknown error'}. Showing {cached} cached leads."
        blocks = [
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Lead sync offline*\n{text}"}
            }
        ]
        return self._post({"text": text, "blocks": blocks}, channel)

    def _lead_fields(self, lead: Dict[str, Any]):
        return [
            {"type": "mrkdwn", "text": f"*Client:*\n{lead.get('client', 'Unknown')}"},
            {"type": "mrkdwn", "text": f"*Lead ID:*\n{lead.get('id', '')}"},
            {"type": "mrkdwn", "text": f"*Amount:*\n₹{lead.get('amount', '0')}"},
            {"type": "mrkdwn", "text": f"*Agent:*\n{lead.get('agent', 'System')}"},
        ]

    def _build_stage_message(self, lead: Dict[str, Any], from_status: str, to_status: str) -> Dict[str, Any]:
        emoji = STAGE_EMOJI.get(to_status, "📌")
        text = f"{emoji} {lead.get('client', 'Unknown')} moved {from_status} → {to_status}"

        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"{emoji} Lead {to_status}"}
            },
            {
                "type": "section",
                "fields": self._lead_fields(lead)
            }
        ]

        if lead.get("note"):
            blocks.append({
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Note:* {lead['note']}"}
            })

        return {"text": text, "blocks": blocks}
