"""
Accumulator Module

Temporal accumulation of per-frame model output variable (MOV) samples.

An accumulator is created once per MOV and per clip, configured with a
channel count and an aggregation mode, fed with one (value, weight) sample
per channel and frame, and finally reduced to one scalar per channel. The
per-channel scalars are averaged to give the MOV value.

DESIGN CONSTRAINTS:
- Explicit state management (no hidden globals)
- Samples of one channel must arrive in chronological order; the
  AVG_WINDOW and FILTERED_MAX modes carry state between calls
- No config module imports - all parameters are explicit
"""

import copy
import logging
from enum import Enum
from typing import List, Optional, Tuple, Union

import numpy as np


logger = logging.getLogger(__name__)


class AccumMode(Enum):
    """
    Aggregation laws of BS.1387 section 5.2 (per channel c, samples i=1..N).

    AVG:          sum(w*x) / sum(w)
    AVG_LOG:      10*log10(sum(w*x) / sum(w))
    RMS:          sqrt(sum(w^2*x^2) / sum(w^2))
    RMS_ASYM:     sqrt(sum(x^2)/N) + 0.5*sqrt(sum(w^2)/N), w is a second value
    AVG_WINDOW:   sqrt(1/N * sum(((1/4) * sum_{j=i-3..i} sqrt(x_j))^4))
    FILTERED_MAX: max(y_i) with y_i = 0.9*y_{i-1} + 0.1*x_i
    ADB:          0 if sum(w) == 0, -0.5 if sum(w*x) == 0,
                  else log10(sum(w*x) / sum(w))
    """
    AVG = 'avg'
    AVG_LOG = 'avg_log'
    RMS = 'rms'
    RMS_ASYM = 'rms_asym'
    AVG_WINDOW = 'avg_window'
    FILTERED_MAX = 'filtered_max'
    ADB = 'adb'


# Number of samples in the sliding window of AVG_WINDOW
WINDOW_LENGTH: int = 4

# Leaky integrator coefficient of FILTERED_MAX
FILTER_COEFFICIENT: float = 0.9


def _ratio(numerator: float, denominator: float) -> float:
    return np.float64(numerator) / np.float64(denominator)


def _coerce_mode(mode: Union[AccumMode, str]) -> AccumMode:
    if isinstance(mode, AccumMode):
        return mode
    try:
        return AccumMode(str(mode).lower())
    except ValueError:
        try:
            return AccumMode[str(mode).upper()]
        except KeyError:
            raise ValueError(f"Unknown accumulation mode: {mode}") from None


class ChannelState:
    """
    Running statistics of one channel.

    Only the fields relevant for the configured mode are updated, the
    others stay at their initial values.
    """

    def __init__(self) -> None:
        self.count: int = 0
        self.sum_a: float = 0.0
        self.sum_b: float = 0.0
        # AVG_WINDOW: square roots of the last WINDOW_LENGTH - 1 samples
        self.past_sqrt: List[float] = []
        # FILTERED_MAX
        self.filter_state: Optional[float] = None
        self.filtered_max: float = 0.0

    def update(self, mode: AccumMode, value: float, weight: float) -> None:
        """Fold one sample into the running statistics."""
        self.count += 1

        if mode in (AccumMode.AVG, AccumMode.AVG_LOG, AccumMode.ADB):
            self.sum_a += weight * value
            self.sum_b += weight

        elif mode == AccumMode.RMS:
            weight_sq = weight * weight
            self.sum_a += weight_sq * value * value
            self.sum_b += weight_sq

        elif mode == AccumMode.RMS_ASYM:
            self.sum_a += value * value
            self.sum_b += weight * weight

        elif mode == AccumMode.AVG_WINDOW:
            root = np.sqrt(value)
            self.past_sqrt.append(root)
            if len(self.past_sqrt) == WINDOW_LENGTH:
                window_avg = sum(self.past_sqrt) / WINDOW_LENGTH
                self.sum_a += window_avg ** 4
                self.past_sqrt.pop(0)
                self.sum_b += 1.0

        elif mode == AccumMode.FILTERED_MAX:
            if self.filter_state is None:
                self.filter_state = value
            else:
                self.filter_state = (FILTER_COEFFICIENT * self.filter_state
                                     + (1.0 - FILTER_COEFFICIENT) * value)
            if self.filter_state > self.filtered_max:
                self.filtered_max = self.filter_state

    def value(self, mode: AccumMode) -> float:
        """Finalized value of this channel for the given mode."""
        if mode == AccumMode.AVG:
            return _ratio(self.sum_a, self.sum_b)

        if mode == AccumMode.AVG_LOG:
            return 10.0 * np.log10(_ratio(self.sum_a, self.sum_b))

        if mode == AccumMode.RMS:
            return np.sqrt(_ratio(self.sum_a, self.sum_b))

        if mode == AccumMode.RMS_ASYM:
            return (np.sqrt(_ratio(self.sum_a, self.count))
                    + 0.5 * np.sqrt(_ratio(self.sum_b, self.count)))

        if mode == AccumMode.AVG_WINDOW:
            return np.sqrt(_ratio(self.sum_a, self.sum_b))

        if mode == AccumMode.FILTERED_MAX:
            return self.filtered_max

        if mode == AccumMode.ADB:
            if self.sum_b == 0.0:
                return 0.0
            if self.sum_a == 0.0:
                return -0.5
            return float(np.log10(self.sum_a / self.sum_b))

        raise ValueError(f"Unknown accumulation mode: {mode}")


class MovAccumulator:
    """
    Per-MOV accumulator over all channels of one clip.

    CONTRACT:
    - Channel count and mode are fixed before the first accumulate() call
    - accumulate() mutates exactly one channel state
    - get_value() is the arithmetic mean of the per-channel values
    - While tentative, get_value() reports the state committed before
      tentative mode was entered

    Parameters:
        channels: Number of channels (default 1)
        mode: Aggregation mode, enum member or its name (default AVG)
        record: Keep a (channel, value, weight) history of all calls
    """

    def __init__(
        self,
        channels: int = 1,
        mode: Union[AccumMode, str] = AccumMode.AVG,
        record: bool = False
    ) -> None:
        self._mode = _coerce_mode(mode)
        self._channels = 0
        self._states: List[ChannelState] = []
        self._snapshot: Optional[List[ChannelState]] = None
        self.record = record
        self.history: List[Tuple[int, float, float]] = []
        self.call_count = 0
        self.set_channels(channels)

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def set_channels(self, channels: int) -> None:
        """Set the channel count; resets the running state."""
        if channels <= 0:
            raise ValueError(f"channels must be positive, got {channels}")
        if self.call_count > 0:
            raise ValueError("Cannot change channels after accumulation has started")
        self._channels = int(channels)
        self._states = [ChannelState() for _ in range(self._channels)]

    def get_channels(self) -> int:
        return self._channels

    def set_mode(self, mode: Union[AccumMode, str]) -> None:
        """Set the aggregation mode."""
        if self.call_count > 0:
            raise ValueError("Cannot change mode after accumulation has started")
        self._mode = _coerce_mode(mode)

    def get_mode(self) -> AccumMode:
        return self._mode

    # -------------------------------------------------------------------------
    # Tentative accumulation
    # -------------------------------------------------------------------------

    @property
    def tentative(self) -> bool:
        return self._snapshot is not None

    def set_tentative(self, tentative: bool) -> None:
        """
        Enter or leave tentative mode.

        Entering snapshots the committed state (a second call while already
        tentative keeps the first snapshot). Leaving commits everything
        accumulated meanwhile.
        """
        if tentative:
            if self._snapshot is None:
                self._snapshot = copy.deepcopy(self._states)
        else:
            self._snapshot = None

    def commit(self) -> None:
        """Accept all tentative samples and leave tentative mode."""
        if self._snapshot is None:
            raise RuntimeError("No tentative accumulation to commit")
        self._snapshot = None

    def rollback(self) -> None:
        """Discard all tentative samples and leave tentative mode."""
        if self._snapshot is None:
            raise RuntimeError("No tentative accumulation to roll back")
        logger.debug("Rolling back tentative %s accumulation", self._mode.name)
        self._states = self._snapshot
        self._snapshot = None

    # -------------------------------------------------------------------------
    # Accumulation
    # -------------------------------------------------------------------------

    def accumulate(self, channel: int, value: float, weight: float = 1.0) -> None:
        """
        Add one sample for a channel.

        Parameters:
            channel: Channel index in [0, channels)
            value: Sample value
            weight: Sample weight; for RMS_ASYM the second signal value
        """
        if not 0 <= channel < self._channels:
            raise ValueError(
                f"Channel {channel} out of range for {self._channels} channels"
            )
        if weight < 0 and self._mode != AccumMode.RMS_ASYM:
            raise ValueError(f"Weight must be non-negative, got {weight}")

        value = float(value)
        weight = float(weight)
        self._states[channel].update(self._mode, value, weight)
        self.call_count += 1
        if self.record:
            self.history.append((channel, value, weight))

    def get_channel_values(self) -> np.ndarray:
        """
        Finalized value of every channel.

        Returns:
            Array of shape (channels,)
        """
        states = self._snapshot if self._snapshot is not None else self._states
        with np.errstate(divide='ignore', invalid='ignore'):
            values = [state.value(self._mode) for state in states]
        return np.asarray(values, dtype=np.float64)

    def get_value(self) -> float:
        """Arithmetic mean of the per-channel values."""
        return float(np.mean(self.get_channel_values()))


def aggregate(
    values: np.ndarray,
    weights: Optional[np.ndarray] = None,
    mode: Union[AccumMode, str] = AccumMode.AVG
) -> float:
    """
    Aggregate a whole series of one channel at once.

    Parameters:
        values: 1D array of per-frame values
        weights: 1D array of per-frame weights (None = all ones)
        mode: Aggregation mode

    Returns:
        Finalized value, identical to feeding the samples one by one
        into a single-channel MovAccumulator
    """
    values = np.asarray(values, dtype=np.float64)
    if weights is None:
        weights = np.ones_like(values)
    else:
        weights = np.asarray(weights, dtype=np.float64)
    if values.shape != weights.shape:
        raise ValueError(
            f"values and weights must have the same shape, got {values.shape} and {weights.shape}"
        )

    accumulator = MovAccumulator(channels=1, mode=mode)
    for value, weight in zip(values, weights):
        accumulator.accumulate(0, value, weight)
    return accumulator.get_value()
