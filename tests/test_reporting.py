import pytest

from graphmf.reporting import save_rmse_curves


def test_save_rmse_curves_writes_image(tmp_path):
    output = save_rmse_curves(
        {"BiasSGD": [1.2, 1.0, 0.9], "ALS": [1.1, 0.8]},
        output_path=tmp_path / "plots" / "rmse.png",
    )

    assert output.exists()
    assert output.stat().st_size > 0


def test_save_rmse_curves_rejects_empty_history(tmp_path):
    with pytest.raises(ValueError):
        save_rmse_curves({"BiasSGD": []}, output_path=tmp_path / "rmse.png")


def test_save_rmse_curves_skips_non_finite_values(tmp_path):
    output = save_rmse_curves(
        {"empty": [float("nan")], "sgd": [float("nan"), 1.1, float("inf"), 0.9]},
        output_path=tmp_path / "rmse.png",
    )

    assert output.exists()

    with pytest.raises(ValueError):
        save_rmse_curves({"empty": [float("nan")]}, output_path=tmp_path / "none.png")
