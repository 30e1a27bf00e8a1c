import httpx
from typing import Optional, Dict, Any, Literal, Protocol
import structlog

logger = structlog.get_logger()

EventType = Literal["generate", "accept", "reject", "manual_create", "practice_done"]
AnalyticsOrigin = Optional[Literal["ai", "manual"]]


class AnalyticsSink(Protocol):
    async def track_event(
        self,
        caller_id: str,
        event_type: EventType,
        origin: AnalyticsOrigin,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class CallbackAnalyticsSink:
    """
    POSTs analytics events to an external collector.
    Configure ANALYTICS_CALLBACK_URL and ANALYTICS_CALLBACK_AUTH.
    Never raises; failures are logged and dropped so tracking cannot break
    the operation being tracked.
    """

    def __init__(
        self,
        url: Optional[str],
        auth: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.auth = auth
        self.timeout = timeout
        self._transport = transport

    async def track_event(
        self,
        caller_id: str,
        event_type: EventType,
        origin: AnalyticsOrigin,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self.url:
            logger.debug("analytics_event_skipped", event_type=event_type, reason="no collector configured")
            return
        payload = {
            "user_id": caller_id,
            "event_type": event_type,
            "origin": origin,
            "context": context or None,
        }
        headers = {"Content-Type": "application/json"}
        if self.auth:
            headers["Authorization"] = self.auth
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json=payload, headers=headers)
                resp.raise_for_status()
        except Exception as e:
            logger.warning("analytics_event_failed", event_type=event_type, caller_id=caller_id, err=str(e))
