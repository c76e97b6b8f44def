"""Transport contract shared by every delivery channel.

A transport takes one resolved DeliveryTarget and performs the outbound
side effect (HTTP POST, provider API call, SMTP send, inbox write).
Transports never touch the job store; the worker interprets the returned
DeliveryResult and decides between completion, retry and failure.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class DeliveryTarget:
    """A concrete destination for one job.

    Attributes:
        channel: Channel or ``"webhook"``
        recipient: Address on that channel (URL, token, phone, email, user id)
        event: Event name the delivery belongs to
        payload: Body to deliver
        options: Channel-specific settings (secret, headers, subject, ...)
    """

    channel: str
    recipient: Any
    event: str
    payload: dict[str, Any] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryResult:
    """Result of one delivery attempt."""

    success: bool
    status_code: int | None = None
    response_body: str | None = None
    response_time_ms: int = 0
    error_message: str | None = None
    retryable: bool = True

    @classmethod
    def ok(cls, status_code: int | None = None, **kwargs: Any) -> "DeliveryResult":
        return cls(success=True, status_code=status_code, **kwargs)

    @classmethod
    def failed(
        cls,
        error_message: str,
        status_code: int | None = None,
        retryable: bool = True,
        **kwargs: Any,
    ) -> "DeliveryResult":
        return cls(
            success=False,
            status_code=status_code,
            error_message=error_message,
            retryable=retryable,
            **kwargs,
        )


@runtime_checkable
class Transport(Protocol):
    """Protocol implemented by every channel transport."""

    channel: str

    def send(self, target: DeliveryTarget, timeout: float) -> DeliveryResult:
        """Deliver to one target within ``timeout`` seconds."""
        ...
