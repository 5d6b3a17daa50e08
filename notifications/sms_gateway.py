"""HTTP SMS gateway client.

Posts a JSON message to the provider's send endpoint via requests.
"""
import os
import logging
import requests

logger = logging.getLogger("alertmon.notifications.sms")


class SmsGateway:
    """Thin wrapper around an HTTP SMS provider.

    The API token comes from ALERTMON_SMS_TOKEN, falling back to sms.api_token.
    """

    def __init__(self, config: dict):
        sms_config = config.get("sms", {})
        self.api_url = sms_config.get("api_url", "")
        self.sender_id = sms_config.get("sender_id", "ALERTMON")
        self.timeout = sms_config.get("timeout", 30)
        self.api_token = os.environ.get("ALERTMON_SMS_TOKEN", sms_config.get("api_token", ""))

    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_token)

    def deliver(self, recipients: list, subject: str, body: str) -> bool:
        """Send one text to every recipient. Returns True when the provider accepts it."""
        if not self.is_configured():
            logger.warning("SMS gateway not configured - skipping SMS")
            return False
        if not recipients:
            return False

        payload = {
            "sender": self.sender_id,
            "to": list(recipients),
            "subject": subject,
            "message": body,
        }
        headers = {"Authorization": f"Bearer {self.api_token}"}
        try:
            resp = requests.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"SMS send failed: {e}")
            return False

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if isinstance(data, dict) and data.get("success") is False:
            logger.warning(f"SMS provider rejected message: {data.get('error') or data}")
            return False
        logger.info(f"SMS sent to {len(recipients)} recipients")
        return True
