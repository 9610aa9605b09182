"""
Signal Aggregator — one decision per bar

Once per new closed bar:
  1. every enabled detector, in registration order: update() then
     check_for_signal()
  2. keep the strongest non-zero signal
  3. ask THAT detector for the stop (calculate_stop_loss)

Ties go to the detector registered first. This is the documented tie-break:
register detectors in priority order.

A detector that raises is logged and counted as "no signal" for the cycle.
One broken detector never stops the others.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..exchange.price_series import PriceSeries
from .patterns import PatternDetector, Signal

logger = logging.getLogger(__name__)


@dataclass
class AggregateResult:
    signal: Optional[Signal]                       # None → no trade this bar
    candidates: List[Signal] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def has_trade(self) -> bool:
        return self.signal is not None


class SignalAggregator:

    def __init__(self, detectors: Optional[List[PatternDetector]] = None):
        self._detectors: List[PatternDetector] = []
        for det in detectors or []:
            self.register(det)

    def register(self, detector: PatternDetector) -> None:
        if any(d.detector_id == detector.detector_id for d in self._detectors):
            raise ValueError(f"detector '{detector.detector_id}' already registered")
        self._detectors.append(detector)
        logger.info(f"registered detector {detector.detector_id} (enabled={detector.enabled})")

    @property
    def detectors(self) -> List[PatternDetector]:
        return list(self._detectors)

    def get(self, detector_id: str) -> Optional[PatternDetector]:
        for det in self._detectors:
            if det.detector_id == detector_id:
                return det
        return None

    def evaluate(self, series: PriceSeries) -> AggregateResult:
        result = AggregateResult(signal=None)
        best: Optional[Signal] = None
        owner: Optional[PatternDetector] = None

        for det in self._detectors:
            if not det.enabled:
                continue
            try:
                det.update(series)
                sig = det.check_for_signal(series)
            except Exception as e:
                logger.error(f"detector {det.detector_id} failed, treating as no signal: {e}")
                result.errors[det.detector_id] = str(e)
                continue
            if sig is None or not sig.is_trade:
                continue
            result.candidates.append(sig)
            # strict > keeps the first-registered detector on ties
            if best is None or sig.strength > best.strength:
                best, owner = sig, det

        if best is None:
            return result

        try:
            stop = owner.calculate_stop_loss(best.direction)
        except Exception as e:
            logger.error(f"detector {owner.detector_id} stop calculation failed: {e}")
            result.errors[owner.detector_id] = str(e)
            return result
        if stop is None:
            logger.warning(f"{owner.detector_id}: {best.direction.name} signal without a stop, skipped")
            return result

        best.stop_loss = stop
        result.signal = best
        logger.info(
            f"signal {best.direction.name} str={best.strength:.1f} from {best.detector_id} "
            f"stop={stop:.5f} ({len(result.candidates)} candidates)"
        )
        return result
