"""Stand-in transport for channels without provider credentials."""

import logging

from app.transports.base import DeliveryResult, DeliveryTarget

logger = logging.getLogger(__name__)


class SimulatedTransport:
    """Logs the delivery and reports success without any I/O."""

    def __init__(self, channel: str) -> None:
        self.channel = channel

    def send(self, target: DeliveryTarget, timeout: float) -> DeliveryResult:
        logger.info(
            f"[SIMULATED] {self.channel} delivery",
            extra={"event": target.event, "channel": self.channel},
        )
        return DeliveryResult.ok()
