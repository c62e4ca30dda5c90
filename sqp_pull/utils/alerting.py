"""
Alerting Module
Failure notifications and run summaries for SQP pulls.

Channels:
- Console logging (always)
- Slack webhook (if SLACK_WEBHOOK_URL is configured)
- GitHub Actions annotations (if in CI)

Notifications are fire-and-forget: a failing channel is logged and never
propagates into the pipeline.
"""

import os
import logging
import requests
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

FATAL_ERROR = "FATAL ERROR"
MAX_RETRIES_REACHED = "MAX RETRIES REACHED"


@dataclass
class FailureNotice:
    """Payload of one failure notification."""
    job_id: Optional[str]
    seller_id: str
    period_type: str
    range_key: str
    error: str
    retry_count: int
    fatal: bool
    action: Optional[str] = None
    tenant_id: Optional[str] = None

    @property
    def notice_type(self) -> str:
        return FATAL_ERROR if self.fatal else MAX_RETRIES_REACHED


class AlertManager:
    """
    Handles alerting for SQP pull events.

    Usage:
        alert = AlertManager(slack_webhook="https://hooks.slack.com/...")
        alert.send_failure_notification(notice)
        alert.send_summary("run_cycle", results)
    """

    def __init__(self, slack_webhook: Optional[str] = None, session: requests.Session = None):
        self.slack_webhook = slack_webhook
        self.session = session or requests.Session()
        self.is_ci = os.environ.get("CI") == "true" or os.environ.get("GITHUB_ACTIONS") == "true"

    def _send_slack(self, payload: dict) -> bool:
        """Send message to Slack webhook."""
        if not self.slack_webhook:
            logger.debug("Slack webhook not configured, skipping")
            return False

        try:
            response = self.session.post(
                self.slack_webhook,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=10
            )
        except requests.RequestException as e:
            logger.warning(f"Slack notification error: {e}")
            return False

        if response.status_code != 200:
            logger.warning(f"Slack notification failed: {response.status_code}")
            return False

        logger.debug("Slack notification sent")
        return True

    def _github_annotation(self, level: str, message: str):
        if self.is_ci:
            print(f"::{level}::{message}")

    def send_failure_notification(self, notice: FailureNotice):
        """
        Report a unit that failed fatally or ran out of retries.

        Args:
            notice: Job, seller, period type, range and error details
        """
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        range_text = notice.range_key or "current period"

        logger.error(
            f"{notice.notice_type}: seller {notice.seller_id} {notice.period_type} {range_text} "
            f"(job {notice.job_id}, {notice.retry_count} retries) - {notice.error}"
        )

        self._github_annotation(
            "error",
            f"SQP {notice.notice_type.lower()}: {notice.seller_id}/{notice.period_type}: {notice.error}"
        )

        fields = [
            ("Type", notice.notice_type),
            ("Seller", notice.seller_id),
            ("Period", f"{notice.period_type} {range_text}"),
            ("Job", notice.job_id or "-"),
            ("Retries", str(notice.retry_count)),
            ("Error", notice.error[:500]),
        ]
        if notice.action:
            fields.append(("Action", notice.action))

        slack_payload = {
            "attachments": [
                {
                    "color": "#FF0000" if notice.fatal else "#FFA500",
                    "blocks": [
                        {
                            "type": "header",
                            "text": {
                                "type": "plain_text",
                                "text": f"SQP Pull {notice.notice_type.title()}",
                                "emoji": True
                            }
                        },
                        {
                            "type": "section",
                            "fields": [
                                {"type": "mrkdwn", "text": f"*{label}:*\n{value}"}
                                for label, value in fields
                            ]
                        },
                        {
                            "type": "context",
                            "elements": [{"type": "mrkdwn", "text": f"Time: {timestamp}"}]
                        }
                    ]
                }
            ]
        }

        try:
            self._send_slack(slack_payload)
        except Exception as e:
            logger.warning(f"Failure notification could not be delivered: {e}")

    def send_summary(self, trigger: str, results: List[Dict], duration_seconds: float = 0):
        """
        Log an end-of-run summary and post it to Slack when something failed.

        Args:
            trigger: Entry point name ('run_cycle', 'backfill', ...)
            results: Per-seller or per-unit result dicts with a 'status' key
            duration_seconds: Total processing time
        """
        failed = [r for r in results if r.get("status") in ("failed", "error")]
        duration_str = f"{duration_seconds:.1f}s" if duration_seconds else "N/A"

        logger.info(
            f"RUN SUMMARY: {trigger} - {len(results)} result(s), {len(failed)} failed, {duration_str}"
        )

        if not failed:
            return

        lines = [
            f"• {r.get('seller', r.get('tenant', '?'))}: {r.get('error') or r.get('status')}"
            for r in failed[:20]
        ]
        slack_payload = {
            "attachments": [
                {
                    "color": "#FFA500",
                    "blocks": [
                        {
                            "type": "header",
                            "text": {"type": "plain_text", "text": f"SQP {trigger}: {len(failed)} failure(s)"}
                        },
                        {
                            "type": "section",
                            "text": {"type": "mrkdwn", "text": "\n".join(lines)}
                        },
                        {
                            "type": "context",
                            "elements": [{"type": "mrkdwn", "text": f"Duration: {duration_str}"}]
                        }
                    ]
                }
            ]
        }
        self._send_slack(slack_payload)
