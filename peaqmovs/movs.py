"""
MOV Calculators Module - Model Output Variables of BS.1387

Each calculator consumes one frame of collaborator output for all channels
and feeds zero or more MovAccumulator instances. They have to be called
once per frame, in chronological order, with accumulators configured for
the matching aggregation mode (see peaqmovs.evaluator).

DESIGN CONSTRAINTS:
- Pure reductions over the given arrays, the only side effect is the
  accumulate() calls
- No config module imports - policy switches come from MovParams groups
- Numeric edge cases are handled by arithmetic guards, not exceptions

Equation numbers refer to ITU-R BS.1387-1.
"""

import logging
from typing import Any, Optional, Sequence

import numpy as np

from peaqmovs.accumulator import AccumMode, MovAccumulator
from peaqmovs.correlation import CorrelationContext
from peaqmovs.interfaces import (
    EarModel,
    FFTEarModel,
    LevelAdapter,
    ModulationProcessor,
    internal_noise_pattern,
)
from peaqmovs.mov_params import (
    ADB_PROBABILITY_THRESHOLD,
    BANDWIDTH_MIN_REF_BIN,
    BANDWIDTH_REF_FACTOR,
    BANDWIDTH_THRESHOLD_END_BIN,
    BANDWIDTH_THRESHOLD_FIRST_BIN,
    DetectionParams,
    EHS_SCALE,
    EhsParams,
    FIVE_DB_POWER_FACTOR,
    NoiseLoudnessParams,
    ONE_POINT_FIVE_DB_POWER_FACTOR,
)


logger = logging.getLogger(__name__)


# =============================================================================
# NOISE LOUDNESS
# =============================================================================

def calc_noise_loudness(
    alpha: float,
    thres_fac: float,
    s0: float,
    nl_min: float,
    ref_mod_proc: ModulationProcessor,
    test_mod_proc: ModulationProcessor,
    ref_excitation: np.ndarray,
    test_excitation: np.ndarray
) -> float:
    """
    Partial loudness of the difference between two excitation patterns.

    Implements (66) to (68):
        s_ref  = thres_fac * Mod_ref + S0
        s_test = thres_fac * Mod_test + S0
        beta   = exp(-alpha * (E_test - E_ref) / E_ref)
        NL     = 24/Z * sum((E_thres / s_test)^0.23 *
                 ((1 + max(s_test*E_test - s_ref*E_ref, 0) /
                   (E_thres + s_ref*E_ref*beta))^0.23 - 1))

    Parameters:
        alpha: Exponent factor of beta
        thres_fac: Modulation scaling of the masking factors
        s0: Offset of the masking factors
        nl_min: Results below this value are set to zero
        ref_mod_proc: Modulation processor in the reference role
        test_mod_proc: Modulation processor in the test role
        ref_excitation: Excitation in the reference role, shape (Z,)
        test_excitation: Excitation in the test role, shape (Z,)

    Returns:
        Noise loudness (>= 0)
    """
    ear_model = ref_mod_proc.ear_model()
    band_count = ear_model.band_count()
    ethres = internal_noise_pattern(ear_model)

    ref_modulation = np.asarray(ref_mod_proc.modulation(), dtype=np.float64)
    test_modulation = np.asarray(test_mod_proc.modulation(), dtype=np.float64)
    ep_ref = np.asarray(ref_excitation, dtype=np.float64)
    ep_test = np.asarray(test_excitation, dtype=np.float64)

    # (67)
    sref = thres_fac * ref_modulation + s0
    stest = thres_fac * test_modulation + s0
    # (68)
    beta = np.exp(-alpha * (ep_test - ep_ref) / ep_ref)
    # (66)
    terms = (ethres / stest) ** 0.23 * (
        (1.0 + np.maximum(stest * ep_test - sref * ep_ref, 0.0)
         / (ethres + sref * ep_ref * beta)) ** 0.23 - 1.0
    )

    noise_loudness = float(np.sum(terms)) * 24.0 / band_count
    if noise_loudness < nl_min:
        noise_loudness = 0.0
    return noise_loudness


# =============================================================================
# MODULATION DIFFERENCE
# =============================================================================

def modulation_difference(
    ref_mod_proc: Sequence[ModulationProcessor],
    test_mod_proc: Sequence[ModulationProcessor],
    mov_accum1: MovAccumulator,
    mov_accum2: Optional[MovAccumulator] = None,
    mov_accum_win: Optional[MovAccumulator] = None
) -> None:
    """
    Modulation difference MOVs (section 4.2).

    Per channel:
        ModDiff1 = 100/Z' * sum(|Mod_test - Mod_ref| / (1 + Mod_ref))
        ModDiff2 = 100/Z  * sum(w * |Mod_test - Mod_ref| / (0.01 + Mod_ref))
    with w = 1 where Mod_test >= Mod_ref, 0.1 otherwise, and Z' = sqrt(Z)
    if mov_accum1 is in RMS mode (the sqrt(Z) weighting of (92)), Z
    otherwise. Both are weighted with the temporal weight (65)
        TempWt = sum(Ebar_ref / (Ebar_ref + levWt * E_thres^0.3))
    where levWt = 100 if mov_accum2 is given, 1 otherwise.

    Parameters:
        ref_mod_proc: Reference modulation processors, one per channel
        test_mod_proc: Test modulation processors, one per channel
        mov_accum1: AvgModDiff1B or RmsModDiffA accumulator
        mov_accum2: AvgModDiff2B accumulator or None
        mov_accum_win: WinModDiff1B accumulator or None
    """
    ear_model = ref_mod_proc[0].ear_model()
    band_count = ear_model.band_count()
    noise_weight = internal_noise_pattern(ear_model) ** 0.3

    lev_wt = 100.0 if mov_accum2 is not None else 1.0
    if mov_accum1.get_mode() == AccumMode.RMS:
        scale1 = 100.0 / np.sqrt(band_count)
    else:
        scale1 = 100.0 / band_count

    for c in range(mov_accum1.get_channels()):
        modulation_ref = np.asarray(ref_mod_proc[c].modulation(), dtype=np.float64)
        modulation_test = np.asarray(test_mod_proc[c].modulation(), dtype=np.float64)
        average_loudness_ref = np.asarray(ref_mod_proc[c].average_loudness(), dtype=np.float64)

        diff = np.abs(modulation_ref - modulation_test)
        # (63) with negWt = 1, offset = 1
        mod_diff_1 = float(np.sum(diff / (1.0 + modulation_ref))) * scale1
        # (63) with negWt = 0.1, offset = 0.01
        w = np.where(modulation_test >= modulation_ref, 1.0, 0.1)
        mod_diff_2 = float(np.sum(w * diff / (0.01 + modulation_ref))) * 100.0 / band_count
        # (65)
        temp_wt = float(np.sum(
            average_loudness_ref / (average_loudness_ref + lev_wt * noise_weight)
        ))

        mov_accum1.accumulate(c, mod_diff_1, temp_wt)
        if mov_accum2 is not None:
            mov_accum2.accumulate(c, mod_diff_2, temp_wt)
        if mov_accum_win is not None:
            mov_accum_win.accumulate(c, mod_diff_1, 1.0)


def noise_loudness(
    ref_mod_proc: Sequence[ModulationProcessor],
    test_mod_proc: Sequence[ModulationProcessor],
    level: Sequence[LevelAdapter],
    mov_accum: MovAccumulator
) -> None:
    """
    RmsNoiseLoudB (section 4.3.1), noise loudness with alpha = 1.5,
    thres_fac = 0.15, S0 = 0.5 on the adapted excitation patterns.

    Parameters:
        ref_mod_proc: Reference modulation processors, one per channel
        test_mod_proc: Test modulation processors, one per channel
        level: Level adapters, one per channel
        mov_accum: RmsNoiseLoudB accumulator
    """
    for c in range(mov_accum.get_channels()):
        value = calc_noise_loudness(
            1.5, 0.15, 0.5, 0.0,
            ref_mod_proc[c], test_mod_proc[c],
            level[c].adapted_ref(), level[c].adapted_test()
        )
        mov_accum.accumulate(c, value, 1.0)


def noise_loud_asym(
    ref_mod_proc: Sequence[ModulationProcessor],
    test_mod_proc: Sequence[ModulationProcessor],
    level: Sequence[LevelAdapter],
    mov_accum: MovAccumulator,
    params: NoiseLoudnessParams = NoiseLoudnessParams()
) -> None:
    """
    RmsNoiseLoudAsymA (section 4.3.3).

    The noise loudness NL (alpha = 2.5, thres_fac = 0.3, S0 = 1, values
    below 0.1 set to zero) is accumulated as value and the missing
    components MC (alpha = 1.5, thres_fac = 0.15, S0 = 1, reference and
    test excitation exchanged) as weight of an RMS_ASYM accumulator,
    which yields rms(NL) + 0.5 * rms(MC).

    With params.swap_mod_patterns the modulation patterns are exchanged
    along with the excitation patterns for MC.

    Parameters:
        ref_mod_proc: Reference modulation processors, one per channel
        test_mod_proc: Test modulation processors, one per channel
        level: Level adapters, one per channel
        mov_accum: RmsNoiseLoudAsymA accumulator
        params: Noise loudness policy
    """
    for c in range(mov_accum.get_channels()):
        ref_excitation = level[c].adapted_ref()
        test_excitation = level[c].adapted_test()
        loudness = calc_noise_loudness(
            2.5, 0.3, 1.0, 0.1,
            ref_mod_proc[c], test_mod_proc[c], ref_excitation, test_excitation
        )
        if params.swap_mod_patterns:
            missing_components = calc_noise_loudness(
                1.5, 0.15, 1.0, 0.0,
                test_mod_proc[c], ref_mod_proc[c], test_excitation, ref_excitation
            )
        else:
            missing_components = calc_noise_loudness(
                1.5, 0.15, 1.0, 0.0,
                ref_mod_proc[c], test_mod_proc[c], test_excitation, ref_excitation
            )
        mov_accum.accumulate(c, loudness, missing_components)


def lin_dist(
    ref_mod_proc: Sequence[ModulationProcessor],
    test_mod_proc: Sequence[ModulationProcessor],
    level: Sequence[LevelAdapter],
    state: Sequence[Any],
    mov_accum: MovAccumulator,
    params: NoiseLoudnessParams = NoiseLoudnessParams()
) -> None:
    """
    AvgLinDistA (section 4.3.2).

    Noise loudness (alpha = 1.5, thres_fac = 0.15, S0 = 1) of the
    unadapted reference excitation in the test role against the adapted
    reference excitation. The test-role modulation is the test signal's
    modulation, or the reference modulation with params.swap_mod_patterns.

    Parameters:
        ref_mod_proc: Reference modulation processors, one per channel
        test_mod_proc: Test modulation processors, one per channel
        level: Level adapters, one per channel
        state: Reference ear model states, one per channel
        mov_accum: AvgLinDistA accumulator
        params: Noise loudness policy
    """
    ear_model = ref_mod_proc[0].ear_model()

    for c in range(mov_accum.get_channels()):
        ref_adapted_excitation = level[c].adapted_ref()
        ref_excitation = ear_model.excitation(state[c])
        test_role_mod = ref_mod_proc[c] if params.swap_mod_patterns else test_mod_proc[c]
        value = calc_noise_loudness(
            1.5, 0.15, 1.0, 0.0,
            ref_mod_proc[c], test_role_mod, ref_adapted_excitation, ref_excitation
        )
        mov_accum.accumulate(c, value, 1.0)


# =============================================================================
# BANDWIDTH
# =============================================================================

def bandwidth(
    ear_model: FFTEarModel,
    ref_state: Sequence[Any],
    test_state: Sequence[Any],
    mov_accum_ref: MovAccumulator,
    mov_accum_test: MovAccumulator
) -> None:
    """
    BandwidthRefB and BandwidthTestB (section 4.4).

    The zero threshold is the largest test power in bins 921..1023. The
    reference bandwidth is the highest bin count k <= 921 with
    P_ref[k-1] more than 10 dB above it; the test bandwidth is the highest
    k <= bandwidth_ref with P_test[k-1] at least 5 dB above it (zero if no
    bin qualifies). Both are accumulated only if the reference bandwidth
    exceeds 346.

    Parameters:
        ear_model: FFT ear model the states belong to
        ref_state: Reference ear model states, one per channel
        test_state: Test ear model states, one per channel
        mov_accum_ref: BandwidthRefB accumulator
        mov_accum_test: BandwidthTestB accumulator
    """
    for c in range(mov_accum_ref.get_channels()):
        ref_power_spectrum = np.asarray(ear_model.power_spectrum(ref_state[c]), dtype=np.float64)
        test_power_spectrum = np.asarray(ear_model.power_spectrum(test_state[c]), dtype=np.float64)

        zero_threshold = float(np.max(
            test_power_spectrum[BANDWIDTH_THRESHOLD_FIRST_BIN:BANDWIDTH_THRESHOLD_END_BIN]
        ))

        above = np.nonzero(
            ref_power_spectrum[:BANDWIDTH_THRESHOLD_FIRST_BIN] > BANDWIDTH_REF_FACTOR * zero_threshold
        )[0]
        bw_ref = int(above[-1]) + 1 if len(above) > 0 else 0

        if bw_ref > BANDWIDTH_MIN_REF_BIN:
            above = np.nonzero(
                test_power_spectrum[:bw_ref] >= FIVE_DB_POWER_FACTOR * zero_threshold
            )[0]
            bw_test = int(above[-1]) + 1 if len(above) > 0 else 0
            mov_accum_ref.accumulate(c, bw_ref, 1.0)
            mov_accum_test.accumulate(c, bw_test, 1.0)
        else:
            logger.debug("Channel %d: reference bandwidth %d too low, frame skipped", c, bw_ref)


# =============================================================================
# NOISE-TO-MASK RATIO
# =============================================================================

def nmr(
    ear_model: FFTEarModel,
    ref_state: Sequence[Any],
    test_state: Sequence[Any],
    mov_accum_nmr: MovAccumulator,
    mov_accum_rel_dist_frames: Optional[MovAccumulator] = None
) -> None:
    """
    Noise-to-mask ratio MOVs (sections 4.5 and 4.6).

    The noise spectrum |sqrt(P_ref) - sqrt(P_test)|^2 of the weighted power
    spectra is grouped into bands and divided by the mask
    E_ref / masking_difference (26). The band average is accumulated
    directly if mov_accum_nmr is in AVG_LOG mode (Total NMRB) and in dB
    otherwise (Segmental NMRB). Frames whose largest band NMR exceeds
    1.5 dB count as 1 for RelDistFramesB, others as 0.

    Parameters:
        ear_model: FFT ear model the states belong to
        ref_state: Reference ear model states, one per channel
        test_state: Test ear model states, one per channel
        mov_accum_nmr: Total NMRB or Segmental NMRB accumulator
        mov_accum_rel_dist_frames: RelDistFramesB accumulator or None
    """
    band_count = ear_model.band_count()
    n_bins = ear_model.frame_size() // 2 + 1
    masking_difference = np.asarray(ear_model.masking_difference(), dtype=np.float64)

    for c in range(mov_accum_nmr.get_channels()):
        ref_excitation = np.asarray(ear_model.excitation(ref_state[c]), dtype=np.float64)
        ref_weighted = np.asarray(ear_model.weighted_power_spectrum(ref_state[c]), dtype=np.float64)[:n_bins]
        test_weighted = np.asarray(ear_model.weighted_power_spectrum(test_state[c]), dtype=np.float64)[:n_bins]

        noise_spectrum = ref_weighted - 2.0 * np.sqrt(ref_weighted * test_weighted) + test_weighted
        noise_in_bands = np.asarray(ear_model.group_into_bands(noise_spectrum), dtype=np.float64)

        # (26)
        mask = ref_excitation / masking_difference
        # (70) without the conversion to dB
        curr_nmr = noise_in_bands / mask
        nmr_value = float(np.sum(curr_nmr)) / band_count
        nmr_max = max(0.0, float(np.max(curr_nmr)))

        if mov_accum_nmr.get_mode() == AccumMode.AVG_LOG:
            mov_accum_nmr.accumulate(c, nmr_value, 1.0)
        else:
            mov_accum_nmr.accumulate(c, 10.0 * np.log10(nmr_value), 1.0)

        if mov_accum_rel_dist_frames is not None:
            distorted = 1.0 if nmr_max > ONE_POINT_FIVE_DB_POWER_FACTOR else 0.0
            mov_accum_rel_dist_frames.accumulate(c, distorted, 1.0)


# =============================================================================
# PROBABILITY OF DETECTION
# =============================================================================

def detection_step_size(level: np.ndarray) -> np.ndarray:
    """
    Effective detection step size s(L) of (74).

    Parameters:
        level: Excitation level L in dB, any shape

    Returns:
        Step sizes, 1e30 where L <= 0
    """
    level = np.asarray(level, dtype=np.float64)
    positive = level > 0.0
    l = np.where(positive, level, 1.0)
    s = (5.95072 * (6.39468 / l) ** 1.71332
         + 9.01033e-11 * l ** 4 + 5.05622e-6 * l ** 3
         - 0.00102438 * l * l + 0.0550197 * l - 0.198719)
    return np.where(positive, s, 1e30)


def prob_detect(
    ear_model: EarModel,
    ref_state: Sequence[Any],
    test_state: Sequence[Any],
    channels: int,
    mov_accum_adb: MovAccumulator,
    mov_accum_mfpd: MovAccumulator,
    params: DetectionParams = DetectionParams()
) -> None:
    """
    Detection probability MOVs ADBB and MFPDB (section 4.7).

    Per band and channel, with excitations in dB:
        L  = 0.3 * max(E_ref, E_test) + 0.7 * E_test          (73)
        e  = E_ref - E_test                                    (75)
        pc = 1 - 0.5^((e / s(L))^b), b = 4 if e > 0 else 6     (76), (77)
        qc = |trunc(e)| / s(L)                                 (78)
    The channels are combined per band by their maximum, the bands by
    P = 1 - prod(1 - p) and Q = sum(q). P goes to mov_accum_mfpd every
    frame, Q to mov_accum_adb only for frames with P > 0.5. Both
    accumulators are single-channel (binaural values).

    Parameters:
        ear_model: Ear model the states belong to
        ref_state: Reference ear model states, one per channel
        test_state: Test ear model states, one per channel
        channels: Number of audio channels
        mov_accum_adb: ADBB accumulator
        mov_accum_mfpd: MFPDB accumulator
        params: Detection policy (floor instead of truncation for qc)
    """
    ref_excitation = np.array(
        [ear_model.excitation(ref_state[c]) for c in range(channels)], dtype=np.float64
    )
    test_excitation = np.array(
        [ear_model.excitation(test_state[c]) for c in range(channels)], dtype=np.float64
    )

    with np.errstate(divide='ignore', invalid='ignore'):
        eref_db = 10.0 * np.log10(ref_excitation)
        etest_db = 10.0 * np.log10(test_excitation)
        # (73)
        l = 0.3 * np.maximum(eref_db, etest_db) + 0.7 * etest_db
        # (74)
        s = detection_step_size(l)
        # (75)
        e = eref_db - etest_db
        b = np.where(eref_db > etest_db, 4.0, 6.0)
        # (76) and (77)
        pc = 1.0 - 0.5 ** ((e / s) ** b)
        # (78)
        if params.use_floor_for_steps:
            qc = np.abs(np.floor(e)) / s
        else:
            qc = np.abs(np.trunc(e)) / s

    # bands silent in both signals give NaN and do not contribute
    pc = np.where(np.isnan(pc), 0.0, pc)
    qc = np.where(np.isnan(qc), 0.0, qc)

    detection_probability = np.maximum(np.max(pc, axis=0), 0.0)
    detection_steps = np.max(qc, axis=0)

    binaural_detection_probability = 1.0 - float(np.prod(1.0 - detection_probability))
    binaural_detection_steps = float(np.sum(detection_steps))

    if binaural_detection_probability > ADB_PROBABILITY_THRESHOLD:
        mov_accum_adb.accumulate(0, binaural_detection_steps, 1.0)
    mov_accum_mfpd.accumulate(0, binaural_detection_probability, 1.0)


# =============================================================================
# ERROR HARMONIC STRUCTURE
# =============================================================================

def ehs(
    ear_model: FFTEarModel,
    ref_state: Sequence[Any],
    test_state: Sequence[Any],
    mov_accum: MovAccumulator,
    context: CorrelationContext,
    params: EhsParams = EhsParams()
) -> None:
    """
    EHSB (section 4.8, with the interpretations of Kabal 2003).

    Frames in which no channel of either signal reaches the energy
    threshold are skipped entirely. Otherwise, per channel:
    1. d = log(P_test / P_ref) of the first 2 * max_lag weighted power bins
       (0 where both are zero)
    2. c = correlation of d with its first half (CorrelationContext.xcorr)
    3. c[i] normalized by sqrt(d0 * dk), dk the energy of d[i:i+max_lag]
    4. mean removal and raised-cosine window (order per params)
    5. power spectrum of the result; the largest bin that rises above its
       predecessor and above all earlier such peaks, times 1000

    Parameters:
        ear_model: FFT ear model the states belong to
        ref_state: Reference ear model states, one per channel
        test_state: Test ear model states, one per channel
        mov_accum: EHSB accumulator
        context: Correlation resources of this evaluation session
        params: EHS policy
    """
    max_lag = context.max_lag
    if params.max_lag != max_lag:
        raise ValueError(
            f"CorrelationContext max_lag {max_lag} does not match params max_lag {params.max_lag}"
        )
    window = context.window(center=params.center_correlation_window)
    channels = mov_accum.get_channels()

    ehs_valid = any(
        ear_model.energy_threshold_reached(ref_state[c])
        or ear_model.energy_threshold_reached(test_state[c])
        for c in range(channels)
    )
    if not ehs_valid:
        logger.debug("Energy threshold not reached in any channel, EHS frame skipped")
        return

    for c in range(channels):
        fref = np.asarray(ear_model.weighted_power_spectrum(ref_state[c]), dtype=np.float64)[:2 * max_lag]
        ftest = np.asarray(ear_model.weighted_power_spectrum(test_state[c]), dtype=np.float64)[:2 * max_lag]

        with np.errstate(divide='ignore', invalid='ignore'):
            d = np.log(ftest / fref)
        d[(fref == 0.0) & (ftest == 0.0)] = 0.0

        corr = context.xcorr(d)

        d0 = corr[0]
        energy_delta = d[max_lag:] ** 2 - d[:max_lag] ** 2
        dk = d0 + np.concatenate(([0.0], np.cumsum(energy_delta[:-1])))

        with np.errstate(divide='ignore', invalid='ignore'):
            normalized = corr / np.sqrt(d0 * dk)
            if params.subtract_dc_before_window:
                windowed = (normalized - np.mean(normalized)) * window
            else:
                windowed = normalized * window

        corr_fft = context.spectrum(windowed)
        if not params.subtract_dc_before_window:
            # zeroing DC equals removing the mean after windowing
            corr_fft[0] = 0.0

        power = corr_fft.real ** 2 + corr_fft.imag ** 2

        # NaN bins (silent identical spectra) never compare greater
        peak = 0.0
        previous = float(power[0])
        for i in range(1, max_lag // 2 + 1):
            current = float(power[i])
            if current > previous and current > peak:
                peak = current
            previous = current

        mov_accum.accumulate(c, EHS_SCALE * peak, 1.0)
