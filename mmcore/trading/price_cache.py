from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from mmcore.common import log_event

from .types import PriceObservation


@dataclass(slots=True)
class _SymbolSlot:
    lock: threading.Lock
    previous: PriceObservation | None = None
    current: PriceObservation | None = None


class PriceCache:
    """Latest and previous price per symbol.

    Each symbol has its own lock so writers for different symbols never
    contend; the registry lock is only held while a slot is created.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._slots: dict[str, _SymbolSlot] = {}
        self._registry_lock = threading.Lock()

    def _slot(self, symbol: str) -> _SymbolSlot:
        slot = self._slots.get(symbol)
        if slot is not None:
            return slot
        with self._registry_lock:
            slot = self._slots.get(symbol)
            if slot is None:
                slot = _SymbolSlot(lock=threading.Lock())
                self._slots[symbol] = slot
            return slot

    def observe(self, symbol: str, price: float, timestamp: float) -> bool:
        if price <= 0:
            log_event(
                self._logger,
                level="warning",
                event="price_observation_invalid",
                message="Dropped non-positive price observation",
                symbol=symbol,
                price=price,
            )
            return False

        slot = self._slot(symbol)
        with slot.lock:
            if slot.current is not None and timestamp <= slot.current.timestamp:
                log_event(
                    self._logger,
                    level="debug",
                    event="price_observation_out_of_order",
                    message="Dropped out-of-order or duplicate price observation",
                    symbol=symbol,
                    timestamp=timestamp,
                    latest_timestamp=slot.current.timestamp,
                )
                return False

            slot.previous = slot.current
            slot.current = PriceObservation(symbol=symbol, price=float(price), timestamp=float(timestamp))
            return True

    def delta(self, symbol: str) -> tuple[float, float] | None:
        slot = self._slots.get(symbol)
        if slot is None:
            return None
        with slot.lock:
            if slot.previous is None or slot.current is None:
                return None
            return slot.previous.price, slot.current.price

    def latest(self, symbol: str) -> PriceObservation | None:
        slot = self._slots.get(symbol)
        if slot is None:
            return None
        with slot.lock:
            return slot.current

    def clear(self, symbol: str) -> None:
        with self._registry_lock:
            self._slots.pop(symbol, None)

    def symbols(self) -> list[str]:
        return sorted(self._slots)
