"""
Correlation Module

FFT based correlation engine for the error harmonic structure (EHS) MOV.

For a sequence d of 2 * max_lag samples, the correlation-like function

    c[i] = sum_{k=0}^{max_lag-1} d[k] * d[k + i],    i = 0 .. max_lag-1

is computed in the frequency domain: the full sequence and its first half
(zero padded) are transformed, the first spectrum is multiplied with the
conjugate of the second, and the product is transformed back. Since the
second sequence is zero beyond max_lag, the circular correlation never
wraps for the lags of interest.

DESIGN CONSTRAINTS:
- Explicit state: window tables live in a CorrelationContext passed to
  every caller, no module level caches
- No config module imports - all parameters are explicit
- Only numpy and scipy dependencies
"""

import threading
from typing import Dict

import numpy as np
from scipy import fft as scipy_fft

from peaqmovs.mov_params import EHS_WINDOW_SCALE


class CorrelationContext:
    """
    Reusable FFT resources for one evaluation session.

    CONTRACT:
    - xcorr() input length is exactly 2 * max_lag
    - window tables are computed once per variant and then read-only
    - Safe to share between threads: the only mutable state is the window
      cache, which is filled under a lock

    Parameters:
        max_lag: Number of correlation lags (default 256)
    """

    def __init__(self, max_lag: int = 256) -> None:
        if max_lag <= 0:
            raise ValueError(f"max_lag must be positive, got {max_lag}")
        self.max_lag = int(max_lag)
        self.fft_size = 2 * self.max_lag
        self._windows: Dict[bool, np.ndarray] = {}
        self._lock = threading.Lock()

    def window(self, center: bool = False) -> np.ndarray:
        """
        Raised-cosine window applied to the normalized correlation.

        Parameters:
            center: If True, use the (1 + cos) window that peaks at lag
                zero, otherwise the (1 - cos) window that peaks in the
                middle of the lag range

        Returns:
            Window of length max_lag (read-only view)
        """
        with self._lock:
            if center not in self._windows:
                n = np.arange(self.max_lag)
                if center:
                    shape = 1.0 + np.cos(2.0 * np.pi * n / (2 * self.max_lag - 1))
                else:
                    shape = 1.0 - np.cos(2.0 * np.pi * n / (self.max_lag - 1))
                table = EHS_WINDOW_SCALE * shape / self.max_lag
                table.setflags(write=False)
                self._windows[center] = table
            return self._windows[center]

    def xcorr(self, d: np.ndarray) -> np.ndarray:
        """
        Correlation of d with its first half via FFT.

        Parameters:
            d: 1D array of length 2 * max_lag

        Returns:
            Array c of length max_lag
        """
        d = np.asarray(d, dtype=np.float64)
        if d.shape != (self.fft_size,):
            raise ValueError(
                f"Expected input of shape ({self.fft_size},), got {d.shape}"
            )

        head = np.zeros(self.fft_size, dtype=np.float64)
        head[:self.max_lag] = d[:self.max_lag]

        spectrum_full = scipy_fft.rfft(d)
        spectrum_head = scipy_fft.rfft(head)
        correlation = scipy_fft.irfft(spectrum_full * np.conj(spectrum_head), n=self.fft_size)

        return correlation[:self.max_lag]

    def direct_xcorr(self, d: np.ndarray) -> np.ndarray:
        """
        Reference O(max_lag^2) evaluation of xcorr().

        Parameters:
            d: 1D array of length 2 * max_lag

        Returns:
            Array c of length max_lag
        """
        d = np.asarray(d, dtype=np.float64)
        if d.shape != (self.fft_size,):
            raise ValueError(
                f"Expected input of shape ({self.fft_size},), got {d.shape}"
            )

        c = np.zeros(self.max_lag, dtype=np.float64)
        head = d[:self.max_lag]
        for i in range(self.max_lag):
            c[i] = np.dot(head, d[i:i + self.max_lag])
        return c

    def spectrum(self, c: np.ndarray) -> np.ndarray:
        """
        Forward real FFT of a windowed correlation sequence.

        Parameters:
            c: 1D array of length max_lag

        Returns:
            Complex array of length max_lag // 2 + 1
        """
        c = np.asarray(c, dtype=np.float64)
        if c.shape != (self.max_lag,):
            raise ValueError(
                f"Expected input of shape ({self.max_lag},), got {c.shape}"
            )
        return scipy_fft.rfft(c)
