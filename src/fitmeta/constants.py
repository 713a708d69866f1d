"""
Global constants and named defaults for fitmeta.
"""

# Replicate design
DEFAULT_N_REPLICATES = 4
# Correlation assumed between replicate measurements of one unit, r in [0, 1]
DEFAULT_REPLICATE_CORRELATION = 0.8
# Stand-in per-replicate proportion variance used in the correlation correction
DEFAULT_REPRESENTATIVE_VARIANCE = 0.0005
# Individuals scored per replicate when the count column is missing
ASSUMED_REPLICATE_COUNT = 100

# Fitness transforms
FITNESS_TRANSFORMS = ["difference", "ratio", "log_ratio"]
DEFAULT_FITNESS_TRANSFORM = "log_ratio"

# REML fitting
DEFAULT_MAX_ITER = 100
DEFAULT_TOL = 1e-8
MAX_STEP_HALVINGS = 30
DEFAULT_TEST = "z"
TEST_TYPES = ["z", "t"]
DEFAULT_ALPHA = 0.05

# Input schema
OBSERVATION_COLUMNS = [
    "block_id",
    "population",
    "isoline",
    "temperature",
    "reproduction_type",
    "mean_start",
    "mean_end",
    "var_start",
    "var_end",
    "reference_block_id",
    "n_replicates",
]
REFERENCE_COLUMNS = [
    "reference_block_id",
    "mean_start",
    "mean_end",
    "var_start",
    "var_end",
    "n_replicates",
]
REPLICATE_COLUMNS = ["block_id", "time", "proportion"]
GROUPING_FIELDS = ["isoline", "temperature", "reproduction_type"]
TIME_POINTS = ("start", "end")

# Design matrix naming
INTERCEPT_NAME = "Intercept"
