"""
peaqmovs - Source Modules

This package contains the modules computing the model output variables
(MOVs) of ITU-R BS.1387 (PEAQ) from per-frame ear model output:
- accumulator: Temporal aggregation of per-frame MOV samples
- correlation: FFT correlation engine for the error harmonic structure
- movs: The MOV calculators
- mov_params: Policy switches and numeric constants
- interfaces: Collaborator protocols (ear models, level adapter, modulation)
- frames: Value types for precomputed collaborator output, frame dumps
- evaluator: Basic and Advanced MOV sets, data boundary handling
- export: JSON and plot generation
"""

__version__ = "1.0.0"
