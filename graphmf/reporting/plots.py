"""RMSE curves for one or more trained models."""

from __future__ import annotations

import math
from pathlib import Path
from typing import Mapping, Sequence

import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt  # noqa: E402
from matplotlib.ticker import MaxNLocator  # noqa: E402


def _finite_points(values: Sequence[float]) -> tuple[list[int], list[float]]:
    iterations, rmse = [], []
    for iteration, value in enumerate(values, start=1):
        if math.isfinite(value):
            iterations.append(iteration)
            rmse.append(float(value))
    return iterations, rmse


def save_rmse_curves(
    rmse_history: Mapping[str, Sequence[float]],
    *,
    output_path: Path | str,
    xlabel: str = "Iteration",
    ylabel: str = "Train RMSE",
    title: str = "Training RMSE per iteration",
) -> Path:
    """
    Plot per-iteration train RMSE, one line per model id.

    Non-finite entries (empty or diverged iterations) are dropped so they do
    not break the axis scale. Each line is labelled with its last finite RMSE.
    Raises ``ValueError`` when no series has a finite value.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    fig, ax = plt.subplots(figsize=(8, 5))
    plotted = 0
    for model_id, values in rmse_history.items():
        iterations, rmse = _finite_points(values)
        if not rmse:
            continue
        plotted += 1
        ax.plot(iterations, rmse, marker=".", label=f"{model_id} ({rmse[-1]:.4f})")

    if not plotted:
        plt.close(fig)
        raise ValueError("RMSE history has no finite values; nothing to plot.")

    ax.set(xlabel=xlabel, ylabel=ylabel, title=title)
    ax.xaxis.set_major_locator(MaxNLocator(integer=True))
    ax.grid(True, linestyle=":", alpha=0.6)
    ax.legend(title="model (final RMSE)")

    fig.tight_layout()
    fig.savefig(output_path, dpi=150)
    plt.close(fig)
    return output_path
