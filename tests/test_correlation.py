"""
Correlation Engine Test Suite

Verifies:
- FFT correlation equals the direct double sum
- Window tables (shape, variants, caching, read-only)
- Input validation
- Sharing one context between threads
"""

import pytest
import numpy as np
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from peaqmovs.correlation import CorrelationContext
from peaqmovs.mov_params import EHS_WINDOW_SCALE


def generate_sequence(n: int = 512, seed: int = 0) -> np.ndarray:
    """Generate a random log-ratio like sequence."""
    rng = np.random.default_rng(seed)
    return rng.normal(0.0, 1.0, n)


class TestXcorr:
    """Test the FFT correlation against the direct evaluation."""

    @pytest.mark.parametrize('seed', [0, 1, 2, 3])
    def test_matches_direct(self, seed):
        context = CorrelationContext()
        d = generate_sequence(seed=seed)

        fast = context.xcorr(d)
        direct = context.direct_xcorr(d)

        assert fast.shape == (256,)
        scale = np.max(np.abs(direct))
        np.testing.assert_allclose(fast, direct, rtol=1e-9, atol=1e-9 * scale)

    def test_lag_zero_is_energy_of_first_half(self):
        context = CorrelationContext()
        d = generate_sequence()
        assert context.xcorr(d)[0] == pytest.approx(np.sum(d[:256] ** 2))

    def test_small_context(self):
        context = CorrelationContext(max_lag=8)
        d = generate_sequence(n=16, seed=5)
        np.testing.assert_allclose(context.xcorr(d), context.direct_xcorr(d), atol=1e-12)

    def test_wrong_length(self):
        context = CorrelationContext()
        with pytest.raises(ValueError):
            context.xcorr(np.zeros(256))
        with pytest.raises(ValueError):
            context.direct_xcorr(np.zeros(511))
        with pytest.raises(ValueError):
            context.spectrum(np.zeros(512))

    def test_invalid_max_lag(self):
        with pytest.raises(ValueError):
            CorrelationContext(max_lag=0)

    def test_spectrum_length(self):
        context = CorrelationContext()
        assert context.spectrum(np.ones(256)).shape == (129,)


class TestWindow:
    """Test the raised-cosine EHS windows."""

    def test_default_window_peaks_in_middle(self):
        window = CorrelationContext().window()
        assert window.shape == (256,)
        assert window[0] == pytest.approx(0.0)
        assert np.argmax(window) in (127, 128)
        assert window.max() == pytest.approx(2.0 * EHS_WINDOW_SCALE / 256, rel=1e-3)

    def test_centered_window_peaks_at_zero(self):
        window = CorrelationContext().window(center=True)
        assert np.argmax(window) == 0
        assert window[0] == pytest.approx(2.0 * EHS_WINDOW_SCALE / 256)

    def test_cached_and_read_only(self):
        context = CorrelationContext()
        first = context.window()
        assert context.window() is first
        with pytest.raises(ValueError):
            first[0] = 1.0

    def test_contexts_independent(self):
        assert CorrelationContext().window() is not CorrelationContext().window()


class TestThreadSafety:
    """Test one context shared by several threads."""

    def test_shared_context(self):
        context = CorrelationContext()
        sequences = [generate_sequence(seed=s) for s in range(8)]

        def work(d):
            window = context.window(center=False)
            return context.spectrum(context.xcorr(d) * window)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(work, sequences))

        for d, result in zip(sequences, results):
            np.testing.assert_allclose(result, work(d))
