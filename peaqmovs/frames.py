"""
Frames Module

Plain value types holding precomputed collaborator output for one frame,
implementing the protocols of peaqmovs.interfaces. They let the MOV
calculators run on arrays produced elsewhere (another implementation of
the ear model, a frame dump on disk, synthetic test data).

Also provides loading of frame dumps stored as .npz archives.
"""

from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

import numpy as np


# Lower limit of the band energies produced by group_into_bands
MIN_BAND_POWER: float = 1e-12

# Number of spectrum bins of the FFT ear model (frame size 2048)
DEFAULT_FRAME_SIZE: int = 2048


class EarModelState:
    """
    Per-channel, per-frame state of a filter bank ear model.

    Attributes:
        excitation: Excitation pattern, shape (band_count,)
    """

    def __init__(self, excitation: np.ndarray) -> None:
        self.excitation = np.asarray(excitation, dtype=np.float64)


class FFTEarModelState(EarModelState):
    """
    Per-channel, per-frame state of an FFT ear model.

    Attributes:
        excitation: Excitation pattern, shape (band_count,)
        power_spectrum: Power spectrum, shape (frame_size // 2 + 1,)
        weighted_power_spectrum: Outer/middle ear weighted power spectrum
        energy_threshold_reached: Whether the frame energy exceeds the
            threshold used for the data boundary and EHS gating
    """

    def __init__(
        self,
        excitation: np.ndarray,
        power_spectrum: np.ndarray,
        weighted_power_spectrum: Optional[np.ndarray] = None,
        energy_threshold_reached: bool = True
    ) -> None:
        super().__init__(excitation)
        self.power_spectrum = np.asarray(power_spectrum, dtype=np.float64)
        if weighted_power_spectrum is None:
            self.weighted_power_spectrum = self.power_spectrum
        else:
            self.weighted_power_spectrum = np.asarray(weighted_power_spectrum, dtype=np.float64)
        self.energy_threshold_reached = bool(energy_threshold_reached)


class BandedEarModel:
    """
    Filter bank style ear model over precomputed excitation patterns.

    Parameters:
        internal_noise: Internal ear noise per band, shape (band_count,)
        frame_size: Frame size in samples (default 2048)
    """

    def __init__(self, internal_noise: np.ndarray, frame_size: int = DEFAULT_FRAME_SIZE) -> None:
        self._internal_noise = np.asarray(internal_noise, dtype=np.float64)
        self._frame_size = int(frame_size)

    def band_count(self) -> int:
        return len(self._internal_noise)

    def frame_size(self) -> int:
        return self._frame_size

    def internal_noise(self, band: int) -> float:
        return float(self._internal_noise[band])

    def excitation(self, state: EarModelState) -> np.ndarray:
        return state.excitation


class FFTBandedEarModel(BandedEarModel):
    """
    FFT ear model over precomputed spectra.

    Parameters:
        internal_noise: Internal ear noise per band, shape (band_count,)
        masking_difference: Masking offset per band (linear power ratio)
        band_edges: Bin indices delimiting the bands, shape (band_count + 1,),
            band k covers bins band_edges[k] .. band_edges[k + 1] - 1
        frame_size: Frame size in samples (default 2048)
    """

    def __init__(
        self,
        internal_noise: np.ndarray,
        masking_difference: np.ndarray,
        band_edges: np.ndarray,
        frame_size: int = DEFAULT_FRAME_SIZE
    ) -> None:
        super().__init__(internal_noise, frame_size)
        self._masking_difference = np.asarray(masking_difference, dtype=np.float64)
        self._band_edges = np.asarray(band_edges, dtype=np.int64)

        band_count = self.band_count()
        if self._masking_difference.shape != (band_count,):
            raise ValueError(
                f"masking_difference must have shape ({band_count},), "
                f"got {self._masking_difference.shape}"
            )
        if self._band_edges.shape != (band_count + 1,):
            raise ValueError(
                f"band_edges must have shape ({band_count + 1},), got {self._band_edges.shape}"
            )
        if np.any(np.diff(self._band_edges) < 0):
            raise ValueError("band_edges must be non-decreasing")

    def power_spectrum(self, state: FFTEarModelState) -> np.ndarray:
        return state.power_spectrum

    def weighted_power_spectrum(self, state: FFTEarModelState) -> np.ndarray:
        return state.weighted_power_spectrum

    def masking_difference(self) -> np.ndarray:
        return self._masking_difference

    def energy_threshold_reached(self, state: FFTEarModelState) -> bool:
        return state.energy_threshold_reached

    def group_into_bands(self, spectrum: np.ndarray) -> np.ndarray:
        """
        Sum spectrum bins into bands.

        Parameters:
            spectrum: Power spectrum, shape (frame_size // 2 + 1,)

        Returns:
            Band powers, shape (band_count,), limited below by MIN_BAND_POWER
        """
        spectrum = np.asarray(spectrum, dtype=np.float64)
        cumulative = np.concatenate(([0.0], np.cumsum(spectrum)))
        band_power = cumulative[self._band_edges[1:]] - cumulative[self._band_edges[:-1]]
        return np.maximum(band_power, MIN_BAND_POWER)


class LevelAdapterOutput:
    """Adapted reference and test excitation of one channel."""

    def __init__(self, ref: np.ndarray, test: np.ndarray) -> None:
        self._ref = np.asarray(ref, dtype=np.float64)
        self._test = np.asarray(test, dtype=np.float64)

    def adapted_ref(self) -> np.ndarray:
        return self._ref

    def adapted_test(self) -> np.ndarray:
        return self._test


class ModulationOutput:
    """Modulation pattern and average loudness of one signal and channel."""

    def __init__(
        self,
        ear_model: BandedEarModel,
        modulation: np.ndarray,
        average_loudness: np.ndarray
    ) -> None:
        self._ear_model = ear_model
        self._modulation = np.asarray(modulation, dtype=np.float64)
        self._average_loudness = np.asarray(average_loudness, dtype=np.float64)

    def ear_model(self) -> BandedEarModel:
        return self._ear_model

    def modulation(self) -> np.ndarray:
        return self._modulation

    def average_loudness(self) -> np.ndarray:
        return self._average_loudness


# =============================================================================
# FRAME DUMPS
# =============================================================================

# Per-frame arrays of a frame dump, each shaped (frames, channels, n)
FRAME_DUMP_KEYS: List[str] = [
    'ref_excitation',
    'test_excitation',
    'ref_power_spectrum',
    'test_power_spectrum',
    'ref_weighted_power_spectrum',
    'test_weighted_power_spectrum',
    'ref_modulation',
    'test_modulation',
    'ref_average_loudness',
    'test_average_loudness',
    'adapted_ref',
    'adapted_test',
]


def load_frame_dump(path: Union[str, Path]) -> Dict[str, np.ndarray]:
    """
    Load a frame dump archive.

    Expected arrays:
        internal_noise: (band_count,)
        masking_difference: (band_count,)
        band_edges: (band_count + 1,)
        energy_threshold_reached: (frames, channels) bool, optional
        and every key of FRAME_DUMP_KEYS: (frames, channels, n)

    The weighted power spectra default to the plain power spectra when
    absent.

    Parameters:
        path: Path to .npz file

    Returns:
        Dictionary of arrays

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If required arrays are missing or inconsistent
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Frame dump not found: {path}")

    with np.load(path) as archive:
        dump = {key: archive[key] for key in archive.files}

    for key in ('ref_weighted_power_spectrum', 'test_weighted_power_spectrum'):
        if key not in dump:
            source = key.replace('weighted_', '')
            if source in dump:
                dump[key] = dump[source]

    required = ['internal_noise', 'masking_difference', 'band_edges'] + FRAME_DUMP_KEYS
    missing = [key for key in required if key not in dump]
    if missing:
        raise ValueError(f"Frame dump is missing arrays: {', '.join(missing)}")

    n_frames, n_channels = dump['ref_excitation'].shape[:2]
    for key in FRAME_DUMP_KEYS:
        if dump[key].shape[:2] != (n_frames, n_channels):
            raise ValueError(
                f"Array {key} has shape {dump[key].shape}, "
                f"expected leading dimensions ({n_frames}, {n_channels})"
            )

    if 'energy_threshold_reached' not in dump:
        dump['energy_threshold_reached'] = np.ones((n_frames, n_channels), dtype=bool)

    return dump


def iter_frame_dump(dump: Dict[str, np.ndarray], frame_size: int = DEFAULT_FRAME_SIZE) -> Iterator:
    """
    Build per-frame collaborator objects from a loaded frame dump.

    Parameters:
        dump: Dictionary from load_frame_dump()
        frame_size: Frame size of the FFT ear model

    Yields:
        FrameInput instances in chronological order
    """
    # Imported here to avoid a cycle, evaluator imports this module
    from peaqmovs.evaluator import FrameInput

    ear_model = FFTBandedEarModel(
        dump['internal_noise'], dump['masking_difference'], dump['band_edges'], frame_size
    )
    n_frames, n_channels = dump['ref_excitation'].shape[:2]

    for i in range(n_frames):
        ref_states = []
        test_states = []
        ref_mod = []
        test_mod = []
        levels = []
        for c in range(n_channels):
            threshold = bool(dump['energy_threshold_reached'][i, c])
            ref_states.append(FFTEarModelState(
                dump['ref_excitation'][i, c],
                dump['ref_power_spectrum'][i, c],
                dump['ref_weighted_power_spectrum'][i, c],
                threshold
            ))
            test_states.append(FFTEarModelState(
                dump['test_excitation'][i, c],
                dump['test_power_spectrum'][i, c],
                dump['test_weighted_power_spectrum'][i, c],
                threshold
            ))
            ref_mod.append(ModulationOutput(
                ear_model, dump['ref_modulation'][i, c], dump['ref_average_loudness'][i, c]
            ))
            test_mod.append(ModulationOutput(
                ear_model, dump['test_modulation'][i, c], dump['test_average_loudness'][i, c]
            ))
            levels.append(LevelAdapterOutput(dump['adapted_ref'][i, c], dump['adapted_test'][i, c]))

        yield FrameInput(
            fft_ear_model=ear_model,
            ref_states=ref_states,
            test_states=test_states,
            ref_mod=ref_mod,
            test_mod=test_mod,
            levels=levels,
        )
