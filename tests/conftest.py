"""Shared fixtures: a small balanced evolution experiment."""

import pandas as pd
import pytest

from fitmeta.records import ObservationUnit, ReferenceUnit


def _observation_rows() -> list[dict]:
    rows = []
    for i in range(8):
        temperature = ["20", "25"][i % 2]
        reproduction = ["asex", "sex"][(i // 2) % 2]
        rows.append(
            {
                "block_id": f"B{i + 1}",
                "population": f"P{i // 2 + 1}",
                "isoline": f"L{i % 3 + 1}",
                "temperature": temperature,
                "reproduction_type": reproduction,
                "mean_start": 0.20 + 0.01 * i,
                "mean_end": 0.50 + 0.03 * i + (0.05 if temperature == "25" else 0.0),
                "var_start": 0.0010,
                "var_end": 0.0015 + 0.0001 * i,
                "reference_block_id": f"R{i % 2 + 1}",
                "n_replicates": 4,
                "generations": 10 * (i + 1),
            }
        )
    return rows


@pytest.fixture
def observation_frame() -> pd.DataFrame:
    return pd.DataFrame(_observation_rows())


@pytest.fixture
def reference_frame() -> pd.DataFrame:
    return pd.DataFrame(
        [
            {"reference_block_id": "R1", "mean_start": 0.20, "mean_end": 0.40,
             "var_start": 0.0010, "var_end": 0.0012, "n_replicates": 4},
            {"reference_block_id": "R2", "mean_start": 0.22, "mean_end": 0.42,
             "var_start": 0.0011, "var_end": 0.0013, "n_replicates": 4},
        ]
    )


@pytest.fixture
def observations() -> list[ObservationUnit]:
    units = []
    for row in _observation_rows():
        generations = row.pop("generations")
        units.append(ObservationUnit(**row, moderators={"generations": generations}))
    return units


@pytest.fixture
def references() -> dict[str, ReferenceUnit]:
    return {
        "R1": ReferenceUnit("R1", 0.20, 0.40, 0.0010, 0.0012, 4),
        "R2": ReferenceUnit("R2", 0.22, 0.42, 0.0011, 0.0013, 4),
    }
