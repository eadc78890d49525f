import logging
import sys
from time import perf_counter

import numpy as np
import pandas as pd
from cartpy import CARTRegressor, load_table

logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")

# usage: python conflict_quickstart.py [conflicts.csv]
if len(sys.argv) > 1:
    df = pd.read_csv(sys.argv[1])
else:
    rng = np.random.default_rng(42)
    n = 400
    df = pd.DataFrame({
        "year": rng.integers(1946, 2020, size=n),
        "duration": rng.uniform(0, 30, size=n),
        "territorial": rng.integers(0, 2, size=n),
        "n_actors": rng.integers(2, 9, size=n),
    })
    df["log_deaths"] = (2.0 + 1.5 * df["territorial"] + 0.08 * df["duration"]
                        + rng.normal(0, 0.6, size=n))

# post-Cold War subset only
data = load_table(df, target="log_deaths", where="year >= 1990")

reg = CARTRegressor(maxdepth=4, minbucket=10, k_folds=10, random_state=1,
                    feature_names=data.feature_names)

t0 = perf_counter(); reg.fit(data.features, data.target); print(f"fit: {perf_counter()-t0:.3f} s")
print(reg.cv_curve_.to_frame().to_string(index=False))
print(f"selected alpha={reg.alpha_:.4g}, leaves={reg.tree_.n_leaves}")
for name, score in sorted(reg.importance().items(), key=lambda kv: -kv[1]):
    print(f"{name:>12s}  {score:.3f}")
for rule in reg.export_rules():
    print(rule)
