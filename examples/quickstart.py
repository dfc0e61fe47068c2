import numpy as np
import pandas as pd

from robust_cvar_backtest.backtest.sweep import SweepGrid, run_grid
from robust_cvar_backtest.metrics import metrics_table

rng = np.random.default_rng(42)
n_days, n_assets = 900, 8
vols = np.linspace(0.008, 0.025, n_assets)
# heavy-tailed daily shocks
shocks = rng.standard_t(df=4, size=(n_days, n_assets)) / np.sqrt(2.0)
returns = pd.DataFrame(
    0.0003 + shocks * vols,
    index=pd.bdate_range("2018-01-01", periods=n_days, name="date"),
    columns=[f"asset_{i}" for i in range(n_assets)],
)


def main() -> None:
    grid = SweepGrid(
        estimators=("baseline", "huber", "tyler"),
        strategies=("min_cvar", "min_variance"),
        alphas=(0.95,),
        policies=("monthly", "bands"),
        bands=(0.05,),
    )
    sweep = run_grid(returns, grid, window_size=504, max_weight=0.30, max_workers=4)
    table = metrics_table(sweep.results)
    print(table[["estimator", "strategy", "policy", "sharpe", "cvar_95", "ann_turnover", "final_wealth"]].round(4))


if __name__ == "__main__":
    main()
