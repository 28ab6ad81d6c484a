"""Experiment artefacts: plots of training curves."""

from .plots import save_rmse_curves  # noqa: F401
