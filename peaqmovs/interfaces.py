"""
Interfaces Module

Capability protocols of the collaborators whose per-frame output the MOV
calculators consume: ear models, level adapters and modulation processors.

Two ear model capabilities exist. Every ear model provides excitation
patterns (EarModel); only the FFT based ear model additionally provides
power spectra, the masking difference and the energy threshold flag
(FFTEarModel). Calculators that need the latter are annotated with
FFTEarModel so that a static type checker rejects a filter bank model.

All returned arrays are read-only to the calculators.
"""

from typing import Any, Protocol, runtime_checkable

import numpy as np


@runtime_checkable
class EarModel(Protocol):
    """Ear model providing per-band excitation patterns."""

    def band_count(self) -> int:
        ...

    def frame_size(self) -> int:
        ...

    def internal_noise(self, band: int) -> float:
        ...

    def excitation(self, state: Any) -> np.ndarray:
        ...


@runtime_checkable
class FFTEarModel(EarModel, Protocol):
    """FFT based ear model with access to the (weighted) power spectra."""

    def power_spectrum(self, state: Any) -> np.ndarray:
        ...

    def weighted_power_spectrum(self, state: Any) -> np.ndarray:
        ...

    def masking_difference(self) -> np.ndarray:
        ...

    def group_into_bands(self, spectrum: np.ndarray) -> np.ndarray:
        ...

    def energy_threshold_reached(self, state: Any) -> bool:
        ...


@runtime_checkable
class LevelAdapter(Protocol):
    """Spectrally adapted excitation patterns of one channel."""

    def adapted_ref(self) -> np.ndarray:
        ...

    def adapted_test(self) -> np.ndarray:
        ...


@runtime_checkable
class ModulationProcessor(Protocol):
    """Modulation pattern and average loudness of one signal and channel."""

    def ear_model(self) -> EarModel:
        ...

    def modulation(self) -> np.ndarray:
        ...

    def average_loudness(self) -> np.ndarray:
        ...


def internal_noise_pattern(ear_model: EarModel) -> np.ndarray:
    """
    Internal ear noise of all bands as one array.

    Parameters:
        ear_model: Any EarModel

    Returns:
        Array of shape (band_count,)
    """
    return np.array(
        [ear_model.internal_noise(band) for band in range(ear_model.band_count())],
        dtype=np.float64
    )
