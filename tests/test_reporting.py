"""
Tests for the report artifacts and the command-line entry point.
"""

import json

import numpy as np
import pandas as pd

from metric_selection import PipelineConfig, run_metric_selection, simulate_data
from metric_selection.cli import main
from metric_selection.reporting import build_html_gallery, frame_to_table, result_tables, save_artifacts


def _result():
    config = PipelineConfig(num_sim_subjects=40, num_sim_metrics=3, num_factors=1, verbose=False)
    return config, run_metric_selection(config)


class TestFrameToTable:
    def test_layout(self):
        frame = pd.DataFrame({"AUC": [0.75, 0.5]}, index=pd.Index(["a", "b"], name="metric"))
        table = frame_to_table("Scores", frame)
        assert table["title"] == "Scores"
        assert table["headers"] == ["metric", "AUC"]
        assert table["rows"] == [["a", "0.750"], ["b", "0.500"]]

    def test_series(self):
        table = frame_to_table("Cutoffs", pd.Series([1.0], index=["a"], name="p95"))
        assert table["headers"] == ["", "p95"]


class TestArtifacts:
    def test_checkpoint(self, tmp_path):
        config, result = _result()
        path = save_artifacts(result, config, tmp_path)
        ckpt = json.loads(path.read_text())
        assert ckpt["config"]["num_factors"] == 1
        assert ckpt["metric_scores"]["index"] == ["metric1", "metric2", "metric3"]
        assert set(ckpt["cutoffs"]) == {"metric1", "metric2", "metric3"}
        assert "age" in ckpt["models"]["metric1"]["coefficients"]

    def test_html_tables_only(self, tmp_path):
        _, result = _result()
        out = build_html_gallery(tmp_path / "no_figs", tmp_path / "report.html", tables=result_tables(result))
        html = out.read_text()
        assert "<table>" in html
        assert "Metric scores" in html
        assert "Abnormality cutoffs" in html

    def test_html_nothing_to_report(self, tmp_path):
        assert build_html_gallery(tmp_path / "empty", tmp_path / "report.html") is None


class TestCLI:
    def test_simulated_run(self, capsys):
        code = main(["--sim-subjects", "40", "--sim-metrics", "3", "--num-factors", "1", "--quiet"])
        assert code == 0
        out = capsys.readouterr().out
        assert "Metric scores" in out
        assert "Abnormality cutoffs" in out

    def test_pooled_csv(self, tmp_path, capsys):
        ref, imp = simulate_data(np.random.default_rng(2), 40, 3)
        pooled = pd.concat([ref.assign(group="reference"), imp.assign(group="impaired")])
        path = tmp_path / "pooled.csv"
        pooled.to_csv(path, index=False)
        code = main(["--data", str(path), "--metrics", "metric1,metric2,metric3", "--num-factors", "1", "--quiet"])
        assert code == 0

    def test_save_plots(self, tmp_path):
        out_dir = tmp_path / "out"
        code = main(["--sim-subjects", "40", "--sim-metrics", "3", "--num-factors", "1",
                     "--save-plots", "--out-dir", str(out_dir), "--quiet"])
        assert code == 0
        assert (out_dir / "metric_selection_checkpoint.json").exists()
        assert (out_dir / "figures.tar.gz").exists()
        assert "<img" in (out_dir / "report.html").read_text()

    def test_schema_error_exit(self, tmp_path, capsys):
        ref, imp = simulate_data(np.random.default_rng(2), 20, 2)
        ref.drop(columns=["gender"]).to_csv(tmp_path / "ref.csv", index=False)
        imp.to_csv(tmp_path / "imp.csv", index=False)
        code = main(["--reference", str(tmp_path / "ref.csv"), "--impaired", str(tmp_path / "imp.csv"),
                     "--metrics", "metric1,metric2", "--quiet"])
        assert code == 1
        assert "gender" in capsys.readouterr().err

    def test_unpaired_tables(self, tmp_path):
        assert main(["--reference", str(tmp_path / "ref.csv"), "--metrics", "m1"]) == 1

    def test_metrics_required_with_data(self, tmp_path):
        assert main(["--data", str(tmp_path / "pooled.csv")]) == 1
