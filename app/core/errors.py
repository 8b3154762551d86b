"""Error taxonomy for delivery, audit and case handling.

Delivery errors
---------------
TransientDeliveryError : network/timeout/provider-side failure; retryable
PermanentDeliveryError : invalid address, rejected content, bad template; terminal
ExpiredError           : notification passed its expiry; terminal, no attempt consumed

Operational errors
------------------
AuditWriteFailure   : audit entry could not be stored; logged, never propagated
ConcurrencyConflict : another worker won the claim; the item is left alone
ConfigurationError  : missing provider or renderer; fatal at startup
"""
from __future__ import annotations


class EngineError(Exception):
    """Base class for every error raised by the engine."""


class DeliveryError(EngineError):
    def __init__(self, reason: str, code: str | None = None) -> None:
        self.reason = reason
        self.code = code
        super().__init__(reason)


class TransientDeliveryError(DeliveryError):
    pass


class PermanentDeliveryError(DeliveryError):
    pass


class ExpiredError(DeliveryError):
    def __init__(self, reason: str = "expired", code: str | None = None) -> None:
        super().__init__(reason, code)


class AuditWriteFailure(EngineError):
    pass


class ConcurrencyConflict(EngineError):
    pass


class ConfigurationError(EngineError):
    pass


class InvalidTransition(EngineError, ValueError):
    """A caller asked for a status change the state machine does not allow."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Invalid {entity} transition {current!r} → {target!r}")


class NotFound(EngineError, KeyError):
    def __init__(self, entity: str, entity_id: object) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")

    def __str__(self) -> str:
        return self.args[0]
