"""
Evaluator Module

Assembly of the BS.1387 MOV sets on top of the calculators.

The Basic version uses one FFT ear model for everything. The Advanced
version computes the modulation, noise loudness and linear distortion MOVs
from a filter bank ear model and only NMR and EHS from the FFT ear model;
the two models run at different frame rates, so a FrameInput may carry
either part alone.

Data boundary: frames before the first frame in which any channel of
either signal reaches the energy threshold are skipped. Later frames
without reached threshold are accumulated tentatively and committed as
soon as the threshold is reached again, so trailing silence never
contributes to the MOVs.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from peaqmovs import movs
from peaqmovs.accumulator import AccumMode, MovAccumulator
from peaqmovs.correlation import CorrelationContext
from peaqmovs.interfaces import FFTEarModel, LevelAdapter, ModulationProcessor
from peaqmovs.mov_params import DEFAULT_PARAMS, MovParams, validate_params


logger = logging.getLogger(__name__)


class MovVersion(Enum):
    """BS.1387 model versions."""
    BASIC = 'basic'
    ADVANCED = 'advanced'


# (name, mode, binaural) in output order; binaural MOVs have one channel
BASIC_MOVS: List[Tuple[str, AccumMode, bool]] = [
    ('AvgModDiff1B', AccumMode.AVG, False),
    ('AvgModDiff2B', AccumMode.AVG, False),
    ('WinModDiff1B', AccumMode.AVG_WINDOW, False),
    ('RmsNoiseLoudB', AccumMode.RMS, False),
    ('BandwidthRefB', AccumMode.AVG, False),
    ('BandwidthTestB', AccumMode.AVG, False),
    ('TotalNMRB', AccumMode.AVG_LOG, False),
    ('RelDistFramesB', AccumMode.AVG, False),
    ('ADBB', AccumMode.ADB, True),
    ('MFPDB', AccumMode.FILTERED_MAX, True),
    ('EHSB', AccumMode.AVG, False),
]

ADVANCED_MOVS: List[Tuple[str, AccumMode, bool]] = [
    ('RmsModDiffA', AccumMode.RMS, False),
    ('RmsNoiseLoudAsymA', AccumMode.RMS_ASYM, False),
    ('AvgLinDistA', AccumMode.AVG, False),
    ('SegmentalNMRB', AccumMode.AVG, False),
    ('EHSB', AccumMode.AVG, False),
]


def _coerce_version(version: Union[MovVersion, str]) -> MovVersion:
    if isinstance(version, MovVersion):
        return version
    try:
        return MovVersion(str(version).lower())
    except ValueError:
        raise ValueError(f"Unknown MOV version: {version}") from None


def mov_names(version: Union[MovVersion, str]) -> List[str]:
    """Names of the MOVs of a version, in output order."""
    table = BASIC_MOVS if _coerce_version(version) == MovVersion.BASIC else ADVANCED_MOVS
    return [name for name, _, _ in table]


def create_accumulators(
    version: Union[MovVersion, str],
    channels: int,
    record: bool = False
) -> Dict[str, MovAccumulator]:
    """
    Create the configured accumulators of a MOV set.

    Parameters:
        version: MovVersion or its value ('basic' / 'advanced')
        channels: Number of audio channels
        record: Keep per-call histories (needed for trace plots)

    Returns:
        OrderedDict of MOV name -> MovAccumulator
    """
    table = BASIC_MOVS if _coerce_version(version) == MovVersion.BASIC else ADVANCED_MOVS
    accumulators = OrderedDict()
    for name, mode, binaural in table:
        accumulators[name] = MovAccumulator(
            channels=1 if binaural else channels, mode=mode, record=record
        )
    return accumulators


@dataclass
class FrameInput:
    """
    Collaborator output of one frame for all channels.

    Attributes:
        fft_ear_model: FFT ear model, None for frames without FFT part
        ref_states: FFT ear model states of the reference, one per channel
        test_states: FFT ear model states of the test signal
        ref_mod: Reference modulation processors, None for frames without
            modulation part
        test_mod: Test modulation processors
        levels: Level adapters, one per channel
        fb_ref_states: Filter bank ear model states of the reference for
            AvgLinDistA (Advanced); defaults to ref_states
    """
    fft_ear_model: Optional[FFTEarModel] = None
    ref_states: Optional[Sequence[Any]] = None
    test_states: Optional[Sequence[Any]] = None
    ref_mod: Optional[Sequence[ModulationProcessor]] = None
    test_mod: Optional[Sequence[ModulationProcessor]] = None
    levels: Optional[Sequence[LevelAdapter]] = None
    fb_ref_states: Optional[Sequence[Any]] = None

    @property
    def has_fft_part(self) -> bool:
        return self.fft_ear_model is not None

    @property
    def has_modulation_part(self) -> bool:
        return self.ref_mod is not None


class MovEvaluator:
    """
    Drives all calculators of a MOV set, frame by frame.

    CONTRACT:
    - process_frame() is called once per frame in chronological order
    - finalize() may be called at any time and more than once
    - frame_count counts every frame passed in, accumulated_frames only
      those inside the data boundary (tentative ones included)

    Parameters:
        version: MovVersion or its value (default BASIC)
        channels: Number of audio channels (default 1)
        params: MovParams policy (default DEFAULT_PARAMS)
        correlation_context: Shared CorrelationContext, created from
            params.ehs.max_lag if None
        record: Keep per-call accumulator histories
    """

    def __init__(
        self,
        version: Union[MovVersion, str] = MovVersion.BASIC,
        channels: int = 1,
        params: MovParams = DEFAULT_PARAMS,
        correlation_context: Optional[CorrelationContext] = None,
        record: bool = False
    ) -> None:
        if channels <= 0:
            raise ValueError(f"channels must be positive, got {channels}")
        validate_params(params)
        self.version = _coerce_version(version)
        self.channels = int(channels)
        self.params = params
        if correlation_context is None:
            correlation_context = CorrelationContext(params.ehs.max_lag)
        self.correlation_context = correlation_context
        self.accumulators = create_accumulators(self.version, self.channels, record)

        self.frame_count = 0
        self.accumulated_frames = 0
        self._started = not params.boundary.skip_leading_silence
        self._tentative = False

    # -------------------------------------------------------------------------
    # Data boundary
    # -------------------------------------------------------------------------

    def _energy_threshold_reached(self, frame: FrameInput) -> bool:
        ear_model = frame.fft_ear_model
        return any(
            ear_model.energy_threshold_reached(frame.ref_states[c])
            or ear_model.energy_threshold_reached(frame.test_states[c])
            for c in range(self.channels)
        )

    def _set_tentative(self, tentative: bool) -> None:
        for accumulator in self.accumulators.values():
            accumulator.set_tentative(tentative)
        self._tentative = tentative

    def _apply_boundary(self, frame: FrameInput) -> bool:
        """Update the boundary state; False if the frame is to be skipped."""
        if not frame.has_fft_part:
            # filter bank frames follow the decision of the last FFT frame
            return self._started

        reached = self._energy_threshold_reached(frame)
        if not self._started:
            if not reached:
                logger.debug("Frame %d: before data boundary, skipped", self.frame_count)
                return False
            self._started = True

        if self.params.boundary.tentative_trailing_silence:
            if not reached and not self._tentative:
                logger.debug("Frame %d: energy threshold not reached, accumulating tentatively",
                             self.frame_count)
                self._set_tentative(True)
            elif reached and self._tentative:
                self._set_tentative(False)
        return True

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    def process_frame(self, frame: FrameInput) -> bool:
        """
        Feed one frame to every calculator of the MOV set.

        Parameters:
            frame: FrameInput of this frame

        Returns:
            True if the frame was accumulated (possibly tentatively)
        """
        accepted = self._apply_boundary(frame)
        self.frame_count += 1
        if not accepted:
            return False

        if self.version == MovVersion.BASIC:
            self._process_basic(frame)
        else:
            self._process_advanced(frame)
        self.accumulated_frames += 1
        return True

    def _process_basic(self, frame: FrameInput) -> None:
        acc = self.accumulators
        params = self.params

        if frame.has_modulation_part:
            movs.modulation_difference(
                frame.ref_mod, frame.test_mod,
                acc['AvgModDiff1B'], acc['AvgModDiff2B'], acc['WinModDiff1B']
            )
            movs.noise_loudness(frame.ref_mod, frame.test_mod, frame.levels, acc['RmsNoiseLoudB'])

        if frame.has_fft_part:
            ear_model = frame.fft_ear_model
            movs.bandwidth(
                ear_model, frame.ref_states, frame.test_states,
                acc['BandwidthRefB'], acc['BandwidthTestB']
            )
            movs.nmr(
                ear_model, frame.ref_states, frame.test_states,
                acc['TotalNMRB'], acc['RelDistFramesB']
            )
            movs.prob_detect(
                ear_model, frame.ref_states, frame.test_states, self.channels,
                acc['ADBB'], acc['MFPDB'], params.detection
            )
            movs.ehs(
                ear_model, frame.ref_states, frame.test_states,
                acc['EHSB'], self.correlation_context, params.ehs
            )

    def _process_advanced(self, frame: FrameInput) -> None:
        acc = self.accumulators
        params = self.params

        if frame.has_modulation_part:
            movs.modulation_difference(frame.ref_mod, frame.test_mod, acc['RmsModDiffA'])
            movs.noise_loud_asym(
                frame.ref_mod, frame.test_mod, frame.levels,
                acc['RmsNoiseLoudAsymA'], params.noise_loudness
            )
            fb_ref_states = frame.fb_ref_states
            if fb_ref_states is None:
                fb_ref_states = frame.ref_states
            movs.lin_dist(
                frame.ref_mod, frame.test_mod, frame.levels, fb_ref_states,
                acc['AvgLinDistA'], params.noise_loudness
            )

        if frame.has_fft_part:
            ear_model = frame.fft_ear_model
            movs.nmr(ear_model, frame.ref_states, frame.test_states, acc['SegmentalNMRB'])
            movs.ehs(
                ear_model, frame.ref_states, frame.test_states,
                acc['EHSB'], self.correlation_context, params.ehs
            )

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    def finalize(self) -> Dict[str, float]:
        """
        Final MOV values.

        Tentatively accumulated trailing frames are not reported. They stay
        pending, so a later frame reaching the energy threshold still
        commits them.

        Returns:
            OrderedDict of MOV name -> value
        """
        values = OrderedDict()
        for name, accumulator in self.accumulators.items():
            value = accumulator.get_value()
            if not np.isfinite(value):
                logger.warning("MOV %s is not finite (%s) after %d frames",
                               name, value, self.accumulated_frames)
            values[name] = value
        return values


def evaluate_frames(
    frames,
    version: Union[MovVersion, str] = MovVersion.BASIC,
    channels: int = 1,
    params: MovParams = DEFAULT_PARAMS,
    record: bool = False
) -> Tuple[Dict[str, float], MovEvaluator]:
    """
    Run a MovEvaluator over an iterable of FrameInput.

    Parameters:
        frames: Iterable of FrameInput in chronological order
        version: MovVersion or its value
        channels: Number of audio channels
        params: MovParams policy
        record: Keep per-call accumulator histories

    Returns:
        Tuple of (MOV values, evaluator)
    """
    evaluator = MovEvaluator(version, channels, params, record=record)
    for frame in frames:
        evaluator.process_frame(frame)
    logger.info("Processed %d frames, %d inside the data boundary",
                evaluator.frame_count, evaluator.accumulated_frames)
    return evaluator.finalize(), evaluator
