from __future__ import annotations


class DcaError(Exception):
    """Base class for every failure raised by the DCA engine."""

    def owner_message(self) -> str:
        return str(self) or self.__class__.__name__


class StrategyNotFound(DcaError):
    def __init__(self, strategy_id: str) -> None:
        super().__init__(f"Strategy {strategy_id} not found")
        self.strategy_id = strategy_id


class InvalidStrategy(DcaError):
    pass


class GatewayError(DcaError):
    """Transient order-gateway failure; the strategy is retried on its next slot."""


class GatewayTimeout(GatewayError):
    def owner_message(self) -> str:
        return "The exchange did not answer in time. The purchase will be retried on the next scheduled run."


class GatewayRejected(GatewayError):
    def owner_message(self) -> str:
        return f"The exchange rejected the purchase ({self}). It will be retried on the next scheduled run."


class LimitExceeded(DcaError):
    def owner_message(self) -> str:
        return f"Strategy completed: {self}."


class ConcurrencyConflict(DcaError):
    pass


class PositionError(DcaError):
    pass


class ScheduleError(DcaError):
    pass


def owner_message_for(exc: BaseException) -> str:
    """What the strategy owner is told about a failed purchase."""
    if isinstance(exc, DcaError):
        return exc.owner_message()
    return "The purchase could not be completed because of an unexpected error. It will be retried on the next scheduled run."
