from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from engine.models import IndicatorSet, Signal


class SignalStrategy(ABC):
    @abstractmethod
    def generate(self, indicators: IndicatorSet, price: float, now: datetime) -> Signal:
        raise NotImplementedError
