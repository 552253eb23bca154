"""
MOV Parameters Module - Policy Switches and Constants

These parameters select between the conformance variants of the model
output variable computations. They are fixed when an evaluator is built
and passed explicitly to every calculator that depends on them.

USAGE:
    from peaqmovs.mov_params import MovParams, EhsParams, DEFAULT_PARAMS

    # Use default params
    params = DEFAULT_PARAMS

    # Create custom params
    custom = MovParams(
        ehs=EhsParams(center_correlation_window=True),
        detection=DetectionParams(use_floor_for_steps=True)
    )
"""

from dataclasses import dataclass, field
from typing import Dict


# =============================================================================
# NUMERIC CONSTANTS (BS.1387)
# =============================================================================

# 5 dB expressed as a power ratio, threshold for the test bandwidth
FIVE_DB_POWER_FACTOR: float = 3.16227766016838

# 1.5 dB expressed as a power ratio, threshold for relative disturbed frames
ONE_POINT_FIVE_DB_POWER_FACTOR: float = 1.41253754462275

# Reference bandwidth must exceed this bin count for a frame to count
BANDWIDTH_MIN_REF_BIN: int = 346

# First and last (exclusive) bins scanned for the bandwidth zero threshold
BANDWIDTH_THRESHOLD_FIRST_BIN: int = 921
BANDWIDTH_THRESHOLD_END_BIN: int = 1024

# Reference bandwidth must exceed the zero threshold by 10 dB
BANDWIDTH_REF_FACTOR: float = 10.0

# Detection probability above which a frame is a distorted block
ADB_PROBABILITY_THRESHOLD: float = 0.5

# Amplitude of the raised-cosine EHS correlation window (sqrt(2/3))
EHS_WINDOW_SCALE: float = 0.81649658092773

# Final EHS scaling
EHS_SCALE: float = 1000.0


@dataclass(frozen=True)
class EhsParams:
    """
    Error harmonic structure parameters.

    Attributes:
        center_correlation_window: Use the window (1 + cos) peaking at lag
            zero instead of the (1 - cos) window peaking at the middle of
            the correlation (default False)
        subtract_dc_before_window: Subtract the mean of the normalized
            correlation before windowing; when False the DC bin of the
            windowed spectrum is zeroed instead (default True)
        max_lag: Number of correlation lags (default 256)
    """
    center_correlation_window: bool = False
    subtract_dc_before_window: bool = True
    max_lag: int = 256


@dataclass(frozen=True)
class NoiseLoudnessParams:
    """
    Noise loudness parameters.

    Attributes:
        swap_mod_patterns: Exchange the modulation patterns used for the
            missing components term of RmsNoiseLoudAsymA and use the
            reference modulation for both roles in AvgLinDistA
            (default False)
    """
    swap_mod_patterns: bool = False


@dataclass(frozen=True)
class DetectionParams:
    """
    Probability of detection parameters.

    Attributes:
        use_floor_for_steps: Round the excitation difference with floor
            instead of truncation when counting steps above threshold
            (default False)
    """
    use_floor_for_steps: bool = False


@dataclass(frozen=True)
class BoundaryParams:
    """
    Data boundary handling for a clip.

    Attributes:
        skip_leading_silence: Ignore frames before the first frame in which
            any channel reaches the energy threshold (default True)
        tentative_trailing_silence: Accumulate frames below the energy
            threshold tentatively so that trailing silence is discarded
            at the end of the clip (default True)
    """
    skip_leading_silence: bool = True
    tentative_trailing_silence: bool = True


@dataclass
class MovParams:
    """
    Complete MOV parameter set aggregating all parameter groups.

    Example usage:
        params = MovParams()  # All defaults
        params = MovParams(ehs=EhsParams(subtract_dc_before_window=False))
    """
    ehs: EhsParams = field(default_factory=EhsParams)
    noise_loudness: NoiseLoudnessParams = field(default_factory=NoiseLoudnessParams)
    detection: DetectionParams = field(default_factory=DetectionParams)
    boundary: BoundaryParams = field(default_factory=BoundaryParams)

    def to_dict(self) -> Dict:
        """
        Export all parameters as a flat dictionary for JSON serialization.

        Returns:
            Dictionary with all parameter values
        """
        return {
            'center_ehs_correlation_window': self.ehs.center_correlation_window,
            'ehs_subtract_dc_before_window': self.ehs.subtract_dc_before_window,
            'ehs_max_lag': self.ehs.max_lag,
            'swap_mod_patts_for_noise_loudness_movs': self.noise_loudness.swap_mod_patterns,
            'use_floor_for_steps_above_threshold': self.detection.use_floor_for_steps,
            'skip_leading_silence': self.boundary.skip_leading_silence,
            'tentative_trailing_silence': self.boundary.tentative_trailing_silence,
        }


# Default parameter instance
DEFAULT_PARAMS = MovParams()


def validate_params(params: MovParams) -> bool:
    """
    Validate parameters for consistency.

    Parameters:
        params: MovParams instance to validate

    Returns:
        True if params are valid

    Raises:
        ValueError: If parameters are invalid
    """
    if params.ehs.max_lag <= 0:
        raise ValueError("ehs max_lag must be positive")
    if params.ehs.max_lag % 2 != 0:
        raise ValueError(f"ehs max_lag must be even, got {params.ehs.max_lag}")

    return True


# Validate default params on import
validate_params(DEFAULT_PARAMS)
