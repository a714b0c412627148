from __future__ import annotations

import time
from dataclasses import dataclass

from data.store import BaseStore


@dataclass
class EngineState:
    last_tick_ts: int | None
    last_error: str | None
    halted: bool


class EngineStateStore:
    def __init__(self, store: BaseStore, engine_id: str = "default") -> None:
        self.store = store
        self.engine_id = engine_id

    def load(self) -> EngineState:
        row = self.store.get_engine_state(self.engine_id)
        return EngineState(
            last_tick_ts=row.get("last_tick_ts"),
            last_error=row.get("last_error"),
            halted=bool(row.get("halted")),
        )

    def update(self, **kwargs) -> None:
        kwargs["updated_at"] = int(time.time())
        self.store.set_engine_state(self.engine_id, **kwargs)
