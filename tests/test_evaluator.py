"""
Evaluator Test Suite

Tests for MOV set assembly, the data boundary and frame dumps.
Verifies:
- Accumulator configuration of the Basic and Advanced MOV sets
- Leading silence skipped, trailing silence discarded, gaps kept
- Frame dump loading and validation
- Non-finite MOV warnings
"""

import logging

import pytest
import numpy as np
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from peaqmovs.accumulator import AccumMode
from peaqmovs.evaluator import (
    FrameInput,
    MovEvaluator,
    MovVersion,
    create_accumulators,
    evaluate_frames,
    mov_names,
)
from peaqmovs.frames import FRAME_DUMP_KEYS, iter_frame_dump, load_frame_dump
from peaqmovs.mov_params import BoundaryParams, EhsParams, MovParams


N_BINS = 1025

PER_FRAME_KEYS = FRAME_DUMP_KEYS + ['energy_threshold_reached']


# =============================================================================
# SYNTHETIC FRAME DUMPS (for testing)
# =============================================================================

def generate_frame_dump(
    n_frames: int = 10,
    channels: int = 2,
    band_count: int = 24,
    silent_frames: tuple = (),
    seed: int = 0
) -> dict:
    """
    Generate a frame dump of a band limited reference and a noisy test signal.

    Frames listed in silent_frames have the energy threshold flag cleared
    but otherwise regular content.
    """
    rng = np.random.default_rng(seed)
    shape = (n_frames, channels, N_BINS)
    edges = np.linspace(0, N_BINS, band_count + 1).astype(np.int64)

    ref_ps = np.ones(shape)
    ref_ps[:, :, :600] = 1e4 * rng.uniform(0.5, 1.5, (n_frames, channels, 600))
    test_ps = ref_ps * rng.uniform(0.7, 1.3, shape)

    ref_excitation = np.add.reduceat(ref_ps, edges[:-1], axis=-1)
    test_excitation = np.add.reduceat(test_ps, edges[:-1], axis=-1)

    band_shape = (n_frames, channels, band_count)
    energy = np.ones((n_frames, channels), dtype=bool)
    for i in silent_frames:
        energy[i] = False

    return {
        'internal_noise': rng.uniform(0.5, 1.5, band_count),
        'masking_difference': 10.0 ** rng.uniform(0.3, 1.0, band_count),
        'band_edges': edges,
        'energy_threshold_reached': energy,
        'ref_excitation': ref_excitation,
        'test_excitation': test_excitation,
        'ref_power_spectrum': ref_ps,
        'test_power_spectrum': test_ps,
        'ref_weighted_power_spectrum': ref_ps,
        'test_weighted_power_spectrum': test_ps,
        'ref_modulation': rng.uniform(0.0, 2.0, band_shape),
        'test_modulation': rng.uniform(0.0, 2.0, band_shape),
        'ref_average_loudness': rng.uniform(0.5, 3.0, band_shape),
        'test_average_loudness': rng.uniform(0.5, 3.0, band_shape),
        'adapted_ref': ref_excitation * rng.uniform(0.9, 1.1, band_shape),
        'adapted_test': test_excitation * rng.uniform(0.9, 1.1, band_shape),
    }


def slice_frames(dump: dict, start: int, stop: int) -> dict:
    """Restrict a frame dump to frames start..stop-1."""
    return {
        key: (value[start:stop] if key in PER_FRAME_KEYS else value)
        for key, value in dump.items()
    }


NO_BOUNDARY = MovParams(boundary=BoundaryParams(
    skip_leading_silence=False, tentative_trailing_silence=False
))


def assert_movs_equal(actual: dict, expected: dict) -> None:
    assert list(actual.keys()) == list(expected.keys())
    np.testing.assert_allclose(
        list(actual.values()), list(expected.values()), rtol=1e-12
    )


# =============================================================================
# MOV SET TESTS
# =============================================================================

class TestMovSets:
    """Test accumulator configuration of both versions."""

    def test_basic_accumulators(self):
        accumulators = create_accumulators(MovVersion.BASIC, channels=2)

        assert list(accumulators.keys()) == mov_names('basic')
        assert len(accumulators) == 11
        assert accumulators['WinModDiff1B'].get_mode() == AccumMode.AVG_WINDOW
        assert accumulators['TotalNMRB'].get_mode() == AccumMode.AVG_LOG
        assert accumulators['ADBB'].get_mode() == AccumMode.ADB
        assert accumulators['MFPDB'].get_mode() == AccumMode.FILTERED_MAX
        assert accumulators['ADBB'].get_channels() == 1
        assert accumulators['MFPDB'].get_channels() == 1
        assert accumulators['EHSB'].get_channels() == 2

    def test_advanced_accumulators(self):
        accumulators = create_accumulators('advanced', channels=1)

        assert list(accumulators.keys()) == [
            'RmsModDiffA', 'RmsNoiseLoudAsymA', 'AvgLinDistA', 'SegmentalNMRB', 'EHSB'
        ]
        assert accumulators['RmsModDiffA'].get_mode() == AccumMode.RMS
        assert accumulators['RmsNoiseLoudAsymA'].get_mode() == AccumMode.RMS_ASYM
        assert accumulators['SegmentalNMRB'].get_mode() == AccumMode.AVG

    def test_unknown_version(self):
        with pytest.raises(ValueError):
            MovEvaluator('expert')

    def test_invalid_params(self):
        with pytest.raises(ValueError):
            MovEvaluator(params=MovParams(ehs=EhsParams(max_lag=255)))

    @pytest.mark.parametrize('version', ['basic', 'advanced'])
    def test_full_run_finite(self, version):
        dump = generate_frame_dump(n_frames=8)
        movs, evaluator = evaluate_frames(iter_frame_dump(dump), version, channels=2)

        assert evaluator.frame_count == 8
        assert list(movs.keys()) == mov_names(version)
        for name in ('EHSB', 'AvgModDiff1B' if version == 'basic' else 'RmsModDiffA'):
            assert np.isfinite(movs[name])

    def test_basic_bandwidth_from_band_limited_reference(self):
        dump = generate_frame_dump(n_frames=4, channels=1)
        movs, _ = evaluate_frames(iter_frame_dump(dump), 'basic', channels=1)

        assert movs['BandwidthRefB'] == pytest.approx(600.0)
        assert movs['BandwidthTestB'] <= movs['BandwidthRefB']


# =============================================================================
# DATA BOUNDARY TESTS
# =============================================================================

class TestDataBoundary:
    """Test leading/trailing silence handling."""

    def test_leading_and_trailing_silence_excluded(self):
        dump = generate_frame_dump(n_frames=10, silent_frames=(0, 1, 9))

        movs, evaluator = evaluate_frames(iter_frame_dump(dump), 'basic', channels=2)
        expected, _ = evaluate_frames(
            iter_frame_dump(slice_frames(dump, 2, 9)), 'basic', channels=2, params=NO_BOUNDARY
        )

        assert evaluator.frame_count == 10
        assert evaluator.accumulated_frames == 8
        assert_movs_equal(movs, expected)

    def test_gap_is_kept(self):
        dump = generate_frame_dump(n_frames=8, silent_frames=(3, 4))

        movs, evaluator = evaluate_frames(iter_frame_dump(dump), 'basic', channels=2)
        expected, _ = evaluate_frames(iter_frame_dump(dump), 'basic', channels=2,
                                      params=NO_BOUNDARY)

        assert evaluator.accumulated_frames == 8
        assert_movs_equal(movs, expected)

    def test_boundary_disabled_keeps_everything(self):
        dump = generate_frame_dump(n_frames=6, silent_frames=(0, 5))
        _, evaluator = evaluate_frames(iter_frame_dump(dump), 'basic', channels=2,
                                       params=NO_BOUNDARY)
        assert evaluator.accumulated_frames == 6

    def test_process_frame_reports_skip(self):
        dump = generate_frame_dump(n_frames=2, silent_frames=(0,))
        evaluator = MovEvaluator('basic', channels=2)
        frames = list(iter_frame_dump(dump))

        assert evaluator.process_frame(frames[0]) is False
        assert evaluator.process_frame(frames[1]) is True

    def test_finalize_twice(self):
        dump = generate_frame_dump(n_frames=6, silent_frames=(5,))
        evaluator = MovEvaluator('advanced', channels=2)
        for frame in iter_frame_dump(dump):
            evaluator.process_frame(frame)

        assert_movs_equal(evaluator.finalize(), evaluator.finalize())

    def test_finalize_mid_run_keeps_pending_frames(self):
        dump = generate_frame_dump(n_frames=3, silent_frames=(1,))
        frames = list(iter_frame_dump(dump))

        uninterrupted, _ = evaluate_frames(frames, 'basic', channels=2)

        evaluator = MovEvaluator('basic', channels=2, record=True)
        evaluator.process_frame(frames[0])
        first_only = evaluator.finalize()
        evaluator.process_frame(frames[1])
        assert_movs_equal(evaluator.finalize(), first_only)
        evaluator.process_frame(frames[2])

        assert_movs_equal(evaluator.finalize(), uninterrupted)
        assert len(evaluator.accumulators['RelDistFramesB'].history) == 6

    def test_modulation_only_frames_follow_boundary(self):
        dump = generate_frame_dump(n_frames=2, channels=1, silent_frames=(0,))
        frames = list(iter_frame_dump(dump))
        modulation_only = FrameInput(
            ref_mod=frames[0].ref_mod, test_mod=frames[0].test_mod, levels=frames[0].levels,
            fb_ref_states=frames[0].ref_states
        )
        evaluator = MovEvaluator('advanced', channels=1, record=True)

        evaluator.process_frame(frames[0])
        assert evaluator.process_frame(modulation_only) is False
        evaluator.process_frame(frames[1])
        assert evaluator.process_frame(modulation_only) is True

        # one modulation sample from frames[1], one from modulation_only
        assert evaluator.accumulators['RmsModDiffA'].call_count == 2
        assert evaluator.accumulators['SegmentalNMRB'].call_count == 1


# =============================================================================
# FINALIZATION TESTS
# =============================================================================

class TestFinalize:
    """Test result reporting."""

    def test_empty_run_warns(self, caplog):
        evaluator = MovEvaluator('basic', channels=1)
        with caplog.at_level(logging.WARNING, logger='peaqmovs.evaluator'):
            movs = evaluator.finalize()

        assert np.isnan(movs['AvgModDiff1B'])
        assert movs['ADBB'] == 0.0
        assert 'AvgModDiff1B' in caplog.text

    def test_record_keeps_history(self):
        dump = generate_frame_dump(n_frames=3, channels=1)
        _, evaluator = evaluate_frames(iter_frame_dump(dump), 'basic', channels=1, record=True)
        assert len(evaluator.accumulators['MFPDB'].history) == 3


# =============================================================================
# FRAME DUMP TESTS
# =============================================================================

class TestFrameDump:
    """Test .npz frame dump loading."""

    def test_round_trip_through_file(self, tmp_path):
        dump = generate_frame_dump(n_frames=4)
        path = tmp_path / 'frames.npz'
        np.savez(path, **dump)

        loaded = load_frame_dump(path)
        direct, _ = evaluate_frames(iter_frame_dump(dump), 'basic', channels=2)
        from_file, _ = evaluate_frames(iter_frame_dump(loaded), 'basic', channels=2)

        assert_movs_equal(from_file, direct)

    def test_defaults_for_optional_arrays(self, tmp_path):
        dump = generate_frame_dump(n_frames=3)
        for key in ('ref_weighted_power_spectrum', 'test_weighted_power_spectrum',
                    'energy_threshold_reached'):
            del dump[key]
        path = tmp_path / 'frames.npz'
        np.savez(path, **dump)

        loaded = load_frame_dump(path)

        np.testing.assert_array_equal(loaded['ref_weighted_power_spectrum'],
                                      loaded['ref_power_spectrum'])
        assert loaded['energy_threshold_reached'].shape == (3, 2)
        assert loaded['energy_threshold_reached'].all()

    def test_missing_array(self, tmp_path):
        dump = generate_frame_dump(n_frames=2)
        del dump['adapted_test']
        path = tmp_path / 'frames.npz'
        np.savez(path, **dump)

        with pytest.raises(ValueError, match='adapted_test'):
            load_frame_dump(path)

    def test_inconsistent_frame_count(self, tmp_path):
        dump = generate_frame_dump(n_frames=3)
        dump['test_modulation'] = dump['test_modulation'][:2]
        path = tmp_path / 'frames.npz'
        np.savez(path, **dump)

        with pytest.raises(ValueError):
            load_frame_dump(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_frame_dump(tmp_path / 'absent.npz')
