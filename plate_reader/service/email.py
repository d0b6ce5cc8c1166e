"""
Email notifications for batch processing, sent through the Resend HTTP API.
"""

import httpx
import logging
from html import escape
from urllib.parse import quote
from typing import Optional

from plate_reader.core.config import Config
from plate_reader.core.models import BatchSummary

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


def format_duration(seconds: float) -> str:
    """2h 15min 30s style duration."""
    seconds = max(int(seconds or 0), 0)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}min")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def _percent(part: int, total: int) -> str:
    if not total:
        return "0.00"
    return f"{part / total * 100:.2f}"


def render_summary_html(summary: BatchSummary, api_base_url: str) -> str:
    name = escape(summary.batch_name)
    base = escape(f"{api_base_url}/api/batches/{quote(summary.batch_name, safe='')}")
    average = summary.duration_seconds / summary.total if summary.total else 0.0
    return f"""
<html>
  <body style="font-family: Arial, sans-serif;">
    <h2>Batch {name} concluded</h2>
    <table cellpadding="6">
      <tr><td>Total photos</td><td><strong>{summary.total}</strong></td></tr>
      <tr><td>Success</td><td>{summary.success} ({_percent(summary.success, summary.total)}%)</td></tr>
      <tr><td>Failures</td><td>{summary.failures} ({_percent(summary.failures, summary.total)}%)</td></tr>
      <tr><td>Needing review</td><td>{summary.warnings}</td></tr>
      <tr><td>Download errors</td><td>{summary.errors}</td></tr>
      <tr><td>Duration</td><td>{format_duration(summary.duration_seconds)} ({average:.2f}s per photo)</td></tr>
      <tr><td>Recognition cost</td><td>US$ {summary.actual_cost:.3f}</td></tr>
    </table>
    <p>
      <a href="{base}/export">Download results CSV</a> |
      <a href="{base}/status">Status</a> |
      <a href="{base}/review">Review queue</a>
    </p>
  </body>
</html>
"""


class EmailNotifier:
    """Sends batch summary and error emails. Does nothing when no API key is configured."""

    def __init__(self, config: Optional[Config] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or Config()
        self.client = client

    @property
    def enabled(self) -> bool:
        return bool(self.config.resend_api_key and self.config.email_to)

    async def _send(self, subject: str, html: str) -> bool:
        if not self.enabled:
            logger.warning(f"Email not configured, skipping: {subject}")
            return False

        payload = {
            "from": self.config.email_from,
            "to": self.config.email_to,
            "subject": subject,
            "html": html,
        }
        headers = {"Authorization": f"Bearer {self.config.resend_api_key}"}

        client = self.client or httpx.AsyncClient(timeout=httpx.Timeout(30.0))
        try:
            response = await client.post(RESEND_URL, json=payload, headers=headers)
        finally:
            if self.client is None:
                await client.aclose()

        if response.status_code >= 400:
            logger.error(f"❌ Email send failed: {response.status_code} - {response.text}")
            return False

        logger.info(f"📧 Email sent: {subject}")
        return True

    async def send_summary(self, summary: BatchSummary) -> bool:
        subject = (
            f"Batch {summary.batch_name} concluded - "
            f"{summary.success}/{summary.total} read successfully"
        )
        return await self._send(subject, render_summary_html(summary, self.config.api_base_url))

    async def send_error(self, batch_name: str, message: str) -> bool:
        html = (
            f"<html><body><h2>Batch {escape(batch_name)} failed</h2>"
            f"<pre>{escape(message)}</pre></body></html>"
        )
        return await self._send(f"Batch {batch_name} processing error", html)
