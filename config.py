"""
peaqmovs - Configuration

Pipeline-level constants for the command line and export layers.
Every default value includes rationale.

The MOV computations themselves never read this module; their policy
switches live in peaqmovs.mov_params.MovParams.
"""

import logging
from typing import List

# =============================================================================
# MOV SET PARAMETERS
# =============================================================================

# Model version evaluated when none is given
# Why: The Basic version is the one most implementations are verified
#      against and needs only the FFT ear model output
DEFAULT_MOV_VERSION: str = 'basic'

# Model versions accepted on the command line
MOV_VERSIONS: List[str] = ['basic', 'advanced']

# Frame size of the FFT ear model (samples)
# Why: BS.1387 fixes 2048 samples at 48 kHz for the FFT ear model, the
#      bandwidth MOVs scan bins up to 1024 of this frame size
FFT_FRAME_SIZE: int = 2048

# =============================================================================
# OUTPUT PARAMETERS
# =============================================================================

# JSON schema version
# Why: Versioning allows future format changes while maintaining compatibility
SCHEMA_VERSION: str = "1.0.0"

# Kernel version (algorithm version, bump when MOV logic changes)
# Why: Allows tracking which algorithm version produced specific outputs
KERNEL_VERSION: str = "1.0.0"

# Plot resolution (dots per inch)
# Why: 150 DPI is good balance of quality and file size for screen viewing
PLOT_DPI: int = 150

# Plot figure size (width, height in inches)
# Why: Wider than tall for timeline view; the height is replaced by
#      PLOT_ROW_HEIGHT per MOV for trace plots
PLOT_FIGSIZE: tuple = (14, 10)

# Height of one MOV subplot in trace plots (inches)
# Why: 11 Basic MOVs at 1.8 inches stay readable on one page
PLOT_ROW_HEIGHT: float = 1.8

# =============================================================================
# LOGGING
# =============================================================================

# Log record format used by the command line
LOG_FORMAT: str = '%(asctime)s %(levelname)-8s %(name)s: %(message)s'

# Default log level (--verbose switches to DEBUG)
# Why: INFO reports per-file progress without per-frame boundary decisions
LOG_LEVEL: int = logging.INFO


def validate_config() -> bool:
    """
    Validate configuration parameters for consistency.

    Returns:
        True if config is valid

    Raises:
        ValueError: If configuration is invalid
    """
    if DEFAULT_MOV_VERSION not in MOV_VERSIONS:
        raise ValueError(
            f"DEFAULT_MOV_VERSION must be one of {MOV_VERSIONS}, got {DEFAULT_MOV_VERSION}"
        )

    if FFT_FRAME_SIZE <= 0 or FFT_FRAME_SIZE % 2 != 0:
        raise ValueError("FFT_FRAME_SIZE must be positive and even")

    if PLOT_DPI <= 0:
        raise ValueError("PLOT_DPI must be positive")

    if len(PLOT_FIGSIZE) != 2 or min(PLOT_FIGSIZE) <= 0:
        raise ValueError("PLOT_FIGSIZE must be two positive sizes")

    if PLOT_ROW_HEIGHT <= 0:
        raise ValueError("PLOT_ROW_HEIGHT must be positive")

    return True


# Validate on import
validate_config()
