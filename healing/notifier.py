"""
Webhook alerts for escalations and incident lifecycle changes.
"""

from typing import Any, Dict, List, Optional

import aiohttp

from healing.events import IncidentEvent, RemediationEvent, SignalType
from healing.signals import SignalBus, Subscription
from utils.logger import get_logger
from utils.time import to_iso

logger = get_logger(__name__)

# Embed colors
COLOR_RED = 15158332
COLOR_ORANGE = 15105570
COLOR_GREEN = 3066993


class WebhookNotifier:
    """
    Posts embed-style JSON alerts to a webhook.

    Delivery failures are logged and never propagate to the bus.
    """

    SIGNALS = (SignalType.ESCALATION, SignalType.INCIDENT_OPENED, SignalType.INCIDENT_RESOLVED)

    def __init__(self, url: str, timeout: float = 10.0, session: Optional[aiohttp.ClientSession] = None):
        self.url = url
        self.timeout = timeout
        self.session = session
        self.sent = 0
        self.failed = 0
        self._subscriptions: List[Subscription] = []

    def attach(self, bus: SignalBus) -> None:
        self.detach()
        for kind in self.SIGNALS:
            self._subscriptions.append(bus.subscribe(kind, self.handle_signal))

    def detach(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

    async def handle_signal(self, event) -> bool:
        return await self.send(self.build_payload(event))

    def build_payload(self, event) -> Dict[str, Any]:
        if isinstance(event, RemediationEvent):
            embed = {
                "title": f"Escalation: {event.module_name}",
                "description": event.message,
                "color": COLOR_RED,
                "fields": [
                    {"name": "Module", "value": event.module_name, "inline": True},
                    {"name": "Attempts", "value": str(event.attempts), "inline": True},
                    {"name": "Incident", "value": event.incident_id or "none", "inline": True},
                ],
            }
        elif isinstance(event, IncidentEvent):
            incident = event.incident
            opened = event.kind == SignalType.INCIDENT_OPENED
            embed = {
                "title": f"Incident {'opened' if opened else 'resolved'}: {incident.id}",
                "description": incident.title,
                "color": COLOR_ORANGE if opened else COLOR_GREEN,
                "fields": [
                    {"name": "Severity", "value": incident.severity.value, "inline": True},
                    {"name": "Modules", "value": ", ".join(incident.all_modules) or "none", "inline": True},
                    {
                        "name": "Remediation Attempts",
                        "value": str(incident.remediation_attempts),
                        "inline": True,
                    },
                ],
            }
            if incident.suspected_root_cause:
                embed["fields"].append(
                    {"name": "Suspected Root Cause", "value": incident.suspected_root_cause, "inline": False}
                )
        else:
            embed = {"title": event.kind.value, "description": str(event.to_dict())}

        embed["timestamp"] = to_iso(event.timestamp)
        embed["footer"] = {"text": "Self-Healing Health Monitor"}
        return {"embeds": [embed]}

    async def send(self, payload: Dict[str, Any]) -> bool:
        """POST ``payload`` to the webhook. Returns True on a 2xx answer."""
        try:
            if self.session is not None:
                return await self._post(self.session, payload)
            async with aiohttp.ClientSession() as session:
                return await self._post(session, payload)
        except Exception as e:
            self.failed += 1
            logger.exception(f"Error sending webhook alert: {e}")
            return False

    async def _post(self, session: aiohttp.ClientSession, payload: Dict[str, Any]) -> bool:
        async with session.post(
            self.url,
            json=payload,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            if 200 <= response.status < 300:
                self.sent += 1
                logger.debug("Webhook alert sent successfully")
                return True
            self.failed += 1
            logger.error(f"Failed to send webhook alert: HTTP {response.status}")
            return False
