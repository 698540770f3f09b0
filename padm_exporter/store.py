"""Latest-value metric store module.

Holds one VariableSample per configured variable. The poller is the only
writer; any number of exposition threads read consistent snapshots.
Samples are immutable and the mapping is swapped as a whole on every
write, so a reader sees either the full pre-merge or post-merge state.
"""

import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Sequence

from padm_exporter.variables import PollCycleResult, VariableDefinition

# Configure module logger
logger = logging.getLogger(__name__)


class SampleState(str, Enum):
    """Freshness of a sample."""
    UNKNOWN = "unknown"  # never fetched successfully
    FRESH = "fresh"
    STALE = "stale"


@dataclass(frozen=True)
class VariableSample:
    """Latest known state of one variable.

    Attributes:
        definition: The variable definition this sample belongs to
        value: Last fetched value, None until the first successful fetch
        updated_at: Unix timestamp of the last successful fetch
        state: Freshness of the value
        device: Device label reported with the value
        text: Textual value, kept for definitions with a value_label
    """
    definition: VariableDefinition
    value: Optional[float] = None
    updated_at: Optional[float] = None
    state: SampleState = SampleState.UNKNOWN
    device: str = ""
    text: str = ""

    @property
    def key(self) -> str:
        return self.definition.key

    @property
    def stale(self) -> bool:
        return self.state is SampleState.STALE


class MetricStore:
    """Concurrency-safe mapping of variable key to latest VariableSample."""

    def __init__(self, definitions: Sequence[VariableDefinition]):
        self._lock = threading.Lock()
        self._samples: Mapping[str, VariableSample] = MappingProxyType({
            d.key: VariableSample(definition=d, device=d.device or "")
            for d in definitions
        })

    def snapshot(self) -> Mapping[str, VariableSample]:
        """Return a consistent read-only view of all samples, in definition order."""
        with self._lock:
            return self._samples

    def get(self, key: str) -> Optional[VariableSample]:
        return self.snapshot().get(key)

    def merge(self, result: PollCycleResult) -> int:
        """Apply one poll cycle's values atomically.

        Samples present in the result get the new value and timestamp and
        become fresh. Other samples keep their previous state.

        Args:
            result: Values obtained in one fetch pass

        Returns:
            Number of samples updated
        """
        with self._lock:
            samples: Dict[str, VariableSample] = dict(self._samples)
            updated = 0
            for key, value in result.values.items():
                sample = samples.get(key)
                if sample is None:
                    continue
                samples[key] = replace(
                    sample,
                    value=value,
                    updated_at=result.fetched_at,
                    state=SampleState.FRESH,
                    device=result.devices.get(key) or sample.device,
                    text=result.texts.get(key, sample.text),
                )
                updated += 1
            self._samples = MappingProxyType(samples)
        return updated

    def expire(self, now: float, stale_after: float) -> int:
        """Flag samples not updated within `stale_after` seconds as stale.

        Samples that have never been fetched stay unknown.

        Returns:
            Number of samples newly flagged stale
        """
        with self._lock:
            samples: Dict[str, VariableSample] = dict(self._samples)
            flagged = 0
            for key, sample in samples.items():
                if sample.state is not SampleState.FRESH or sample.updated_at is None:
                    continue
                if now - sample.updated_at > stale_after:
                    samples[key] = replace(sample, state=SampleState.STALE)
                    flagged += 1
            if flagged:
                self._samples = MappingProxyType(samples)

        if flagged:
            logger.warning(f"{flagged} variable(s) marked stale (no update for {stale_after:.0f}s)")
        return flagged
