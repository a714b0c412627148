from __future__ import annotations

from datetime import datetime

from data.store import BaseStore


class Idempotency:
    """Claims on (strategy_id, scheduled_time) so a slot is executed at most once."""

    def __init__(self, store: BaseStore) -> None:
        self.store = store

    @staticmethod
    def key(strategy_id: str, scheduled: datetime) -> str:
        return f"{strategy_id}:{int(scheduled.timestamp())}"

    def exists(self, strategy_id: str, scheduled: datetime) -> bool:
        return self.store.has_execution_claim(strategy_id, scheduled)

    def add(self, strategy_id: str, scheduled: datetime) -> bool:
        return self.store.add_execution_claim(strategy_id, scheduled)

    def check_and_add(self, strategy_id: str, scheduled: datetime) -> bool:
        if self.exists(strategy_id, scheduled):
            return False
        return self.add(strategy_id, scheduled)
