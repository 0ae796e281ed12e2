"""Inbound webhook intake and the outbound delivery queue."""

from typing import Any

__all__ = ["deliver_due", "receive_webhook"]


def __getattr__(name: str) -> Any:
    if name == "deliver_due":
        from .delivery import deliver_due as _deliver_due

        return _deliver_due
    if name == "receive_webhook":
        from .intake import receive_webhook as _receive_webhook

        return _receive_webhook
    raise AttributeError(name)
