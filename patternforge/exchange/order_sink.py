"""
Order Sink — where sized orders go.

The orchestrator only needs two calls from a broker:
  submit(direction, volume, price, stop_loss, take_profit) → OrderResult
  modify_stop(ticket, stop_loss)

A rejected order raises ExecutionFailure. Callers log it and move on to the
next bar; nothing here retries.

PaperOrderSink fills every valid order at the requested price and keeps the
open tickets in memory. It rejects what a real broker would: non-positive
volume, or a stop on the wrong side of the entry.
"""
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..strategy.patterns import Direction

logger = logging.getLogger(__name__)


class ExecutionFailure(Exception):
    """Order rejected by the sink."""


@dataclass
class OrderResult:
    ticket: str
    direction: Direction
    volume: float
    price: float
    stop_loss: float
    take_profit: Optional[float] = None


class OrderSink(ABC):

    @abstractmethod
    def submit(
        self,
        direction: Direction,
        volume: float,
        price: float,
        stop_loss: float,
        take_profit: Optional[float] = None,
    ) -> OrderResult:
        ...

    @abstractmethod
    def modify_stop(self, ticket: str, stop_loss: float) -> None:
        ...


def validate_order(direction: Direction, volume: float, price: float, stop_loss: float) -> None:
    if direction == Direction.NONE:
        raise ExecutionFailure("order has no direction")
    if volume <= 0:
        raise ExecutionFailure(f"volume must be positive, got {volume}")
    if direction == Direction.BULLISH and stop_loss >= price:
        raise ExecutionFailure(f"long stop {stop_loss:.5f} not below entry {price:.5f}")
    if direction == Direction.BEARISH and stop_loss <= price:
        raise ExecutionFailure(f"short stop {stop_loss:.5f} not above entry {price:.5f}")


class PaperOrderSink(OrderSink):
    """In-memory fills. `orders` keeps every accepted order, `stop_changes` every modify."""

    def __init__(self, prefix: str = "paper"):
        self.prefix = prefix
        self._ids = itertools.count(1)
        self.orders: Dict[str, OrderResult] = {}
        self.stop_changes: List[tuple] = []

    def submit(
        self,
        direction: Direction,
        volume: float,
        price: float,
        stop_loss: float,
        take_profit: Optional[float] = None,
    ) -> OrderResult:
        try:
            validate_order(direction, volume, price, stop_loss)
        except ExecutionFailure as e:
            logger.warning(f"[PAPER] rejected {direction.name} {volume} @ {price:.5f}: {e}")
            raise

        ticket = f"{self.prefix}-{next(self._ids)}"
        result = OrderResult(ticket, direction, volume, price, stop_loss, take_profit)
        self.orders[ticket] = result
        tp = "None" if take_profit is None else f"{take_profit:.5f}"
        logger.info(
            f"[PAPER] {direction.name} {volume} @ {price:.5f}  SL={stop_loss:.5f}  TP={tp}  ticket={ticket}"
        )
        return result

    def modify_stop(self, ticket: str, stop_loss: float) -> None:
        order = self.orders.get(ticket)
        if order is None:
            raise ExecutionFailure(f"unknown ticket {ticket}")
        logger.info(f"[PAPER] {ticket} SL {order.stop_loss:.5f} → {stop_loss:.5f}")
        order.stop_loss = stop_loss
        self.stop_changes.append((ticket, stop_loss))
