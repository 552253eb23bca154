"""
Export Module

Generate JSON outputs and plots for finalized MOVs.
All outputs follow versioned schema for consistency.
"""

import numpy as np
import json
from pathlib import Path
from typing import Dict, List, Any, Optional
import matplotlib
matplotlib.use('Agg')  # Non-interactive backend
import matplotlib.pyplot as plt

import config
from peaqmovs.accumulator import MovAccumulator
from peaqmovs.mov_params import MovParams


class NumpyEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy types."""
    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        elif isinstance(obj, np.floating):
            return float(obj)
        elif isinstance(obj, np.ndarray):
            return obj.tolist()
        elif isinstance(obj, np.bool_):
            return bool(obj)
        return super().default(obj)


def _finite_or_none(value: float) -> Optional[float]:
    value = float(value)
    return value if np.isfinite(value) else None


def create_movs_json(
    movs: Dict[str, float],
    params: MovParams,
    metadata: Dict[str, Any]
) -> Dict:
    """
    Create complete MOV JSON following schema.

    Non-finite MOVs are written as null.

    Parameters:
        movs: Ordered dict of MOV name -> value from MovEvaluator.finalize()
        params: MovParams used for the evaluation
        metadata: Dict with at least 'version', 'channels', 'frame_count'
            and 'accumulated_frames'

    Returns:
        Complete MOV dict ready for JSON serialization
    """
    return {
        'schema_version': config.SCHEMA_VERSION,
        'kernel_version': config.KERNEL_VERSION,

        'metadata': {
            'source': metadata.get('source'),
            'version': metadata['version'],
            'channels': metadata['channels'],
            'frame_count': metadata['frame_count'],
            'accumulated_frames': metadata['accumulated_frames'],
        },

        'params': params.to_dict(),

        'movs': {name: _finite_or_none(value) for name, value in movs.items()},
    }


def save_json(data: Dict, output_path: Path) -> None:
    """
    Save data as JSON with pretty printing.

    Parameters:
        data: Dictionary to save
        output_path: Path to output file
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, 'w') as f:
        json.dump(data, f, indent=2, cls=NumpyEncoder)


def plot_mov_traces(
    accumulators: Dict[str, MovAccumulator],
    output_path: Path,
    title: str = "MOV Traces"
) -> bool:
    """
    Plot the per-frame samples of every recorded accumulator.

    One subplot per MOV with one line per channel. Accumulators without
    history (created with record=False, or never fed) are left out.

    Parameters:
        accumulators: Dict of MOV name -> MovAccumulator
        output_path: Path to save plot
        title: Plot title

    Returns:
        True if a plot was written
    """
    recorded = [(name, acc) for name, acc in accumulators.items() if acc.history]
    if not recorded:
        return False

    fig, axes = plt.subplots(
        len(recorded), 1,
        figsize=(config.PLOT_FIGSIZE[0], config.PLOT_ROW_HEIGHT * len(recorded)),
        squeeze=False
    )

    for ax, (name, acc) in zip(axes[:, 0], recorded):
        history = np.asarray(acc.history, dtype=np.float64)
        for channel in range(acc.get_channels()):
            samples = history[history[:, 0] == channel, 1]
            ax.plot(np.arange(len(samples)), samples,
                    label=f'ch {channel}', linewidth=1)

        ax.set_ylabel(name, fontsize=9)
        ax.grid(True, alpha=0.3)
        if acc.get_channels() > 1:
            ax.legend(loc='upper right', fontsize=8)

    axes[0, 0].set_title(title, fontsize=12, fontweight='bold')
    axes[-1, 0].set_xlabel('Accumulated sample', fontsize=10)

    plt.tight_layout()

    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_path, dpi=config.PLOT_DPI, bbox_inches='tight')
    plt.close(fig)
    return True


def export_all_outputs(
    movs: Dict[str, float],
    params: MovParams,
    metadata: Dict[str, Any],
    accumulators: Dict[str, MovAccumulator],
    output_dir: Path,
    name: str,
    generate_plots: bool = True
) -> List[Path]:
    """
    Export all outputs: MOV JSON and trace plot.

    Parameters:
        movs: Finalized MOVs
        params: MovParams used
        metadata: Evaluation metadata (see create_movs_json)
        accumulators: Accumulators of the evaluation
        output_dir: Output directory path
        name: Base name for the files
        generate_plots: Whether to generate plot files

    Returns:
        List of paths to created files
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    created_files = []

    movs_path = output_dir / f"{name}_movs.json"
    save_json(create_movs_json(movs, params, metadata), movs_path)
    created_files.append(movs_path)

    if generate_plots:
        plot_path = output_dir / f"{name}_traces.png"
        if plot_mov_traces(accumulators, plot_path, title=f"MOV Traces: {name}"):
            created_files.append(plot_path)

    return created_files


def print_movs_summary(movs: Dict[str, float], name: str) -> None:
    """
    Print MOV table to console.

    Parameters:
        movs: Finalized MOVs
        name: Input name
    """
    print(f"\n{'='*60}")
    print(f"MOVs: {name}")
    print(f"{'='*60}")
    for mov_name, value in movs.items():
        print(f"  {mov_name:<20s} {value:12.6f}")
    print(f"{'='*60}\n")
