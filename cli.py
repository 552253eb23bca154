#!/usr/bin/env python3
"""
peaqmovs - Command Line Interface

Main entry point for computing the BS.1387 model output variables from
frame dumps (.npz archives of per-frame ear model output, see
peaqmovs.frames.load_frame_dump).
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import config
from peaqmovs import export
from peaqmovs.evaluator import MovEvaluator
from peaqmovs.frames import iter_frame_dump, load_frame_dump
from peaqmovs.mov_params import (
    BoundaryParams,
    DetectionParams,
    EhsParams,
    MovParams,
    NoiseLoudnessParams,
)


logger = logging.getLogger('peaqmovs.cli')


def build_params(args: argparse.Namespace) -> MovParams:
    """
    Build MovParams from parsed command line flags.

    Parameters:
        args: Parsed arguments

    Returns:
        MovParams instance
    """
    return MovParams(
        ehs=EhsParams(
            center_correlation_window=args.center_ehs_window,
            subtract_dc_before_window=not args.ehs_dc_after_window,
        ),
        noise_loudness=NoiseLoudnessParams(swap_mod_patterns=args.swap_mod_patterns),
        detection=DetectionParams(use_floor_for_steps=args.floor_steps),
        boundary=BoundaryParams(
            skip_leading_silence=not args.keep_leading_silence,
            tentative_trailing_silence=not args.keep_trailing_silence,
        ),
    )


def process_single_dump(
    file_path: Path,
    output_dir: Path,
    version: str,
    params: MovParams,
    generate_plots: bool = True
) -> bool:
    """
    Compute the MOVs of one frame dump and export them.

    Parameters:
        file_path: Path to .npz frame dump
        output_dir: Output directory for results
        version: 'basic' or 'advanced'
        params: MovParams policy
        generate_plots: Whether to write the trace plot

    Returns:
        True if successful, False otherwise
    """
    name = file_path.stem

    try:
        logger.info("Processing %s", file_path.name)

        dump = load_frame_dump(file_path)
        n_frames, channels = dump['ref_excitation'].shape[:2]
        logger.info("%d frames, %d channels", n_frames, channels)

        evaluator = MovEvaluator(version, channels, params, record=generate_plots)
        for frame in iter_frame_dump(dump, config.FFT_FRAME_SIZE):
            evaluator.process_frame(frame)
        movs = evaluator.finalize()

        metadata = {
            'source': file_path.name,
            'version': evaluator.version.value,
            'channels': channels,
            'frame_count': evaluator.frame_count,
            'accumulated_frames': evaluator.accumulated_frames,
        }

        created_files = export.export_all_outputs(
            movs, params, metadata, evaluator.accumulators,
            output_dir, name, generate_plots=generate_plots
        )
        logger.info("Created %d output files", len(created_files))

        export.print_movs_summary(movs, name)
        return True

    except Exception as e:
        print(f"ERROR processing {file_path.name}: {e}", file=sys.stderr)
        logger.debug("Traceback", exc_info=True)
        return False


def process_directory(
    input_dir: Path,
    output_dir: Path,
    version: str,
    params: MovParams,
    generate_plots: bool = True
) -> dict:
    """
    Process all frame dumps in a directory.

    Parameters:
        input_dir: Input directory containing .npz files
        output_dir: Output directory for results
        version: 'basic' or 'advanced'
        params: MovParams policy
        generate_plots: Whether to write trace plots

    Returns:
        Dict with success/failure counts
    """
    dump_files = sorted(input_dir.glob('*.npz'))

    if not dump_files:
        print(f"No frame dumps found in {input_dir}")
        return {'success': 0, 'failed': 0}

    print(f"Found {len(dump_files)} frame dumps")

    success_count = 0
    failed_count = 0

    for dump_file in dump_files:
        success = process_single_dump(
            dump_file, output_dir / dump_file.stem, version, params, generate_plots
        )
        if success:
            success_count += 1
        else:
            failed_count += 1

    print(f"\nProcessing complete: {success_count} successful, {failed_count} failed")

    return {'success': success_count, 'failed': failed_count}


def create_parser() -> argparse.ArgumentParser:
    """Argument parser of the command line interface."""
    parser = argparse.ArgumentParser(
        description='peaqmovs - BS.1387 model output variables from frame dumps',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Basic version MOVs of one dump
  %(prog)s frames.npz --output results/

  # Advanced version for a directory of dumps, no plots
  %(prog)s dumps/ --output results/ --version advanced --no-plots

  # Conformance variant of EHS
  %(prog)s frames.npz --output results/ --center-ehs-window --ehs-dc-after-window
        """
    )

    parser.add_argument(
        'input',
        type=str,
        help='Input frame dump (.npz) or directory of dumps'
    )

    parser.add_argument(
        '--output', '-o',
        type=str,
        required=True,
        help='Output directory for results'
    )

    parser.add_argument(
        '--version',
        choices=config.MOV_VERSIONS,
        default=config.DEFAULT_MOV_VERSION,
        help=f'Model version (default: {config.DEFAULT_MOV_VERSION})'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Log per-frame decisions (DEBUG level)'
    )

    parser.add_argument(
        '--no-plots',
        action='store_true',
        help='Skip plot generation'
    )

    # Policy switches
    parser.add_argument(
        '--swap-mod-patterns',
        action='store_true',
        help='Swap modulation patterns for the noise loudness MOVs'
    )

    parser.add_argument(
        '--center-ehs-window',
        action='store_true',
        help='Use the EHS correlation window peaking at lag zero'
    )

    parser.add_argument(
        '--ehs-dc-after-window',
        action='store_true',
        help='Remove the EHS correlation DC after windowing instead of before'
    )

    parser.add_argument(
        '--floor-steps',
        action='store_true',
        help='Use floor instead of truncation for detection steps'
    )

    parser.add_argument(
        '--keep-leading-silence',
        action='store_true',
        help='Accumulate frames before the energy threshold is first reached'
    )

    parser.add_argument(
        '--keep-trailing-silence',
        action='store_true',
        help='Commit frames below the energy threshold immediately'
    )

    return parser


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        format=config.LOG_FORMAT,
        level=logging.DEBUG if args.verbose else config.LOG_LEVEL
    )

    params = build_params(args)
    output_dir = Path(args.output)
    input_path = Path(args.input)

    if not input_path.exists():
        print(f"ERROR: Input path does not exist: {input_path}", file=sys.stderr)
        sys.exit(1)

    if input_path.is_file():
        success = process_single_dump(
            input_path, output_dir, args.version, params, not args.no_plots
        )
        sys.exit(0 if success else 1)

    elif input_path.is_dir():
        results = process_directory(
            input_path, output_dir, args.version, params, not args.no_plots
        )
        sys.exit(0 if results['failed'] == 0 else 1)

    else:
        print(f"ERROR: Invalid input path: {input_path}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
