"""Figures, JSON checkpoint and HTML report of a metric-selection run.

Plotting functions draw one figure each and finish with ``plt.show()``
followed by ``plt.close()``; when the run saves plots, the autosave hook
from ``metric_selection.config`` turns every show into a numbered image
file.  Under the Agg backend nothing is displayed.

- plot_confound_correction: raw vs compensated metric against each covariate
- plot_partial_correlations: inter-metric partial-correlation heatmap
- plot_scree: correlation eigenvalues per candidate factor count
- plot_impairment_profile: pooled values against the cutoffs, per group
- save_artifacts: JSON checkpoint of the configuration and result tables,
  plus a tar.gz of the figure directory
- build_html_gallery: self-contained HTML page with every figure
  (base64-embedded) and the result tables
"""

import base64
import json
import tarfile
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from metric_selection.config import FIG_DIR, FIG_FORMAT, GROUP_COLUMN, IMPAIRED_LABEL, REFERENCE_LABEL
from metric_selection.confounds import is_categorical
from metric_selection.factors import suggest_num_factors
from metric_selection.scoring import confound_correction_view
from metric_selection.utils import compensated_name

GROUP_COLORS = {REFERENCE_LABEL: "tab:blue", IMPAIRED_LABEL: "tab:red"}


def plot_confound_correction(reference: pd.DataFrame, effects: Sequence[str], metric: str) -> None:
    """Raw (top row) and compensated (bottom row) metric against each covariate.

    Continuous covariates are scatter plots; categorical ones are box plots
    per level.  After correction the dependence on every covariate should
    have vanished in the reference population.
    """
    view = confound_correction_view(reference, effects, metric)
    n = max(len(effects), 1)
    fig, axes = plt.subplots(2, n, figsize=(3.2 * n, 6), squeeze=False)
    for j, effect in enumerate(effects):
        for i, (column, label) in enumerate((("raw", metric), ("compensated", compensated_name(metric)))):
            ax = axes[i, j]
            if is_categorical(view[effect]):
                levels = sorted(pd.unique(view[effect]), key=str)
                ax.boxplot([view.loc[view[effect] == lv, column] for lv in levels])
                ax.set_xticks(range(1, len(levels) + 1))
                ax.set_xticklabels([str(lv) for lv in levels])
            else:
                ax.scatter(view[effect], view[column], s=10, alpha=0.6)
            ax.set_xlabel(effect)
            if j == 0:
                ax.set_ylabel(label)
            ax.grid(True, linestyle="--", linewidth=0.5)
    fig.suptitle(f"{metric}: confound correction (reference population)")
    fig.tight_layout()
    plt.show(); plt.close(fig)


def plot_partial_correlations(partial: pd.DataFrame) -> None:
    names = list(partial.index)
    p = len(names)
    fig, ax = plt.subplots(figsize=(max(4.0, 1.1 * p + 2), max(3.5, 0.9 * p + 2)))
    im = ax.imshow(partial.to_numpy(), cmap="RdBu_r", vmin=-1, vmax=1)
    for i in range(p):
        for j in range(p):
            ax.text(j, i, f"{partial.iat[i, j]:0.2f}", ha="center", va="center", fontsize=9)
    ax.set_xticks(range(p)); ax.set_xticklabels(names, rotation=45, ha="right")
    ax.set_yticks(range(p)); ax.set_yticklabels(names)
    fig.colorbar(im, ax=ax, orientation="horizontal", pad=0.2, label="partial correlation")
    ax.set_title("Inter-metric partial correlation")
    plt.show(); plt.close(fig)


def plot_scree(eigenvalues: np.ndarray, k: Optional[int] = None) -> None:
    """Scree plot; the Kaiser line sits at eigenvalue 1 and *k* is highlighted."""
    eigenvalues = np.asarray(eigenvalues)
    x = np.arange(1, eigenvalues.size + 1)
    plt.figure(figsize=(7, 5))
    plt.plot(x, eigenvalues, marker="o", linestyle="-", linewidth=1)
    plt.axhline(1.0, color="k", linestyle="--", linewidth=0.8,
                label=f"Kaiser criterion (k={suggest_num_factors(eigenvalues)})")
    if k is not None:
        plt.plot([k], [eigenvalues[k - 1]], marker="o", markersize=12, fillstyle="none",
                 color="tab:red", linestyle="none", label=f"chosen k={k}")
    plt.xticks(x)
    plt.xlabel("factor"); plt.ylabel("eigenvalue of the correlation matrix")
    plt.title("Scree plot")
    plt.grid(True, linestyle="--", linewidth=0.5)
    plt.legend(); plt.show(); plt.close()


def plot_impairment_profile(population: pd.DataFrame, metrics: Sequence[str],
                            cutoffs: pd.Series, profile: dict) -> None:
    """Pooled compensated values per metric with their cutoffs, and abnormal counts per group."""
    metrics = list(metrics)
    fig, (ax_vals, ax_counts) = plt.subplots(
        1, 2, figsize=(4 + 1.2 * len(metrics), 5), gridspec_kw={"width_ratios": [3, 1]})
    rng = np.random.default_rng(0)  # jitter only
    groups = population[GROUP_COLUMN].to_numpy()
    for j, metric in enumerate(metrics):
        values = population[compensated_name(metric)].to_numpy(dtype=np.float64)
        for offset, label in ((-0.15, REFERENCE_LABEL), (0.15, IMPAIRED_LABEL)):
            mask = groups == label
            xs = j + offset + rng.uniform(-0.08, 0.08, mask.sum())
            ax_vals.scatter(xs, values[mask], s=8, alpha=0.5, color=GROUP_COLORS[label],
                            label=label if j == 0 else None)
        ax_vals.hlines(cutoffs[metric], j - 0.4, j + 0.4, color="k", linewidth=2,
                       label=f"cutoff ({cutoffs.name})" if j == 0 else None)
    ax_vals.set_xticks(range(len(metrics))); ax_vals.set_xticklabels(metrics, rotation=45, ha="right")
    ax_vals.set_ylabel("compensated value (reference z-score)")
    ax_vals.grid(True, linestyle="--", linewidth=0.5)
    ax_vals.legend(fontsize=8)

    counts = profile["counts"]
    bins = np.arange(len(metrics) + 2) - 0.5
    for label in (REFERENCE_LABEL, IMPAIRED_LABEL):
        ax_counts.hist(counts.to_numpy()[groups == label], bins=bins, alpha=0.5,
                       color=GROUP_COLORS[label], label=label)
    ax_counts.set_xlabel("abnormal metrics per subject"); ax_counts.set_ylabel("subjects")
    ax_counts.legend(fontsize=8)
    fig.suptitle("Impairment profile")
    fig.tight_layout()
    plt.show(); plt.close(fig)


# ---------------------------------------------------------------------------
# Checkpoint and HTML report
# ---------------------------------------------------------------------------


def frame_to_table(title: str, frame, float_fmt: str = "{:.3f}") -> dict:
    """Convert a DataFrame or Series to the {title, headers, rows} table dict."""
    if isinstance(frame, pd.Series):
        frame = frame.to_frame()
    headers = [frame.index.name or ""] + [str(c) for c in frame.columns]
    rows = []
    for idx, row in frame.iterrows():
        cells = [str(idx)]
        for v in row:
            cells.append(float_fmt.format(v) if isinstance(v, (float, np.floating)) else str(v))
        rows.append(cells)
    return {"title": title, "headers": headers, "rows": rows}


def result_tables(result) -> List[dict]:
    """The tables of a ``PipelineResult`` in report order."""
    tables = [frame_to_table("Metric scores", result.metric_scores)]
    if result.partial_correlations is not None:
        tables.append(frame_to_table("Partial correlations", result.partial_correlations))
    if result.factor_model is not None:
        tables.append(frame_to_table("Factor loadings", result.factor_model.loadings))
    if result.cutoffs is not None:
        tables.append(frame_to_table("Abnormality cutoffs", result.cutoffs))
    if result.profile is not None:
        tables.append(frame_to_table("Abnormal fraction per group", result.profile["fractions"]))
    return tables


def _jsonable_frame(frame) -> dict:
    # NaN is not valid JSON; store it as null.
    return json.loads(frame.to_json(orient="split"))


def save_artifacts(result, config, out_dir: Path) -> Path:
    """Write a JSON checkpoint of *config* and the result tables to *out_dir*.

    If figures were saved during the run, the figure directory is also
    bundled into ``figures.tar.gz`` next to the checkpoint.  Returns the
    checkpoint path.
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    fig_dir = Path(config.fig_dir)
    if config.save_plots and fig_dir.exists():
        out_tgz = out_dir / "figures.tar.gz"
        with tarfile.open(out_tgz, "w:gz") as tar:
            tar.add(str(fig_dir), arcname=fig_dir.name)
        print(f"[report] wrote {out_tgz}")

    settings = {}
    for name, value in vars(config).items():
        if callable(value):
            value = getattr(value, "__name__", repr(value))
        elif isinstance(value, Path):
            value = str(value)
        settings[name] = value

    ckpt = {
        "config": settings,
        "metric_scores": _jsonable_frame(result.metric_scores),
        "models": {
            m: {"coefficients": model.coefficients.to_dict(), "r_squared": model.r_squared,
                "residual_sd": model.residual_sd, "n_obs": model.n_obs,
                "model_kind": model.model_kind, "fit_population": model.fit_population}
            for m, model in result.models.items()
        },
    }
    if result.partial_correlations is not None:
        ckpt["partial_correlations"] = _jsonable_frame(result.partial_correlations)
    if result.factor_model is not None:
        fm = result.factor_model
        ckpt["factor_model"] = {
            "loadings": _jsonable_frame(fm.loadings),
            "communalities": fm.communalities.to_dict(),
            "eigenvalues": fm.eigenvalues.tolist(),
            "n_iter": fm.n_iter,
            "rotation": fm.rotation,
        }
    if result.cutoffs is not None:
        ckpt["cutoffs"] = result.cutoffs.to_dict()

    out_path = out_dir / "metric_selection_checkpoint.json"
    with open(out_path, "w") as f:
        json.dump(ckpt, f, indent=2)
    print(f"[report] wrote {out_path}")
    return out_path


def build_html_gallery(
    fig_dir: Path = FIG_DIR,
    out_path="report.html",
    tables: Optional[List[dict]] = None,
    fmt: str = FIG_FORMAT,
) -> Optional[Path]:
    """Compile saved figures and result tables into one self-contained HTML file.

    Figures are base64-encoded into ``<img>`` tags so the page opens in any
    browser without the image files.  *tables* are dicts with keys
    "title", "headers" and "rows" (see ``frame_to_table``).  Returns the
    written path, or None when there is nothing to report.
    """
    fig_dir = Path(fig_dir)
    figs = sorted(fig_dir.glob(f"*.{fmt}")) if fig_dir.exists() else []
    if not figs and not tables:
        print("[report] no figures or tables to compile")
        return None

    mime = "image/svg+xml" if fmt == "svg" else f"image/{fmt}"
    parts = [
        "<!DOCTYPE html><html><head>",
        "<meta charset='utf-8'>",
        "<title>Metric selection report</title>",
        "<style>",
        "body{font-family:system-ui,sans-serif;max-width:1100px;margin:0 auto;padding:20px}",
        "h2{margin-top:36px;border-bottom:1px solid #999;padding-bottom:4px}",
        ".fig{margin:20px 0;text-align:center}",
        ".fig img{max-width:100%;height:auto}",
        ".fig p{font-size:13px;color:#555;margin:6px 0 0}",
        "table{border-collapse:collapse;margin:16px 0;font-size:14px}",
        "th,td{border:1px solid #bbb;padding:4px 10px;text-align:right}",
        "th{background:#eee}",
        "td:first-child,th:first-child{text-align:left}",
        "</style></head><body>",
        "<h1>Metric selection report</h1>",
    ]

    if tables:
        parts.append("<h2>Tables</h2>")
        for tbl in tables:
            parts.append(f"<h3>{tbl['title']}</h3><table>")
            parts.append("<tr>" + "".join(f"<th>{h}</th>" for h in tbl["headers"]) + "</tr>")
            for row in tbl["rows"]:
                parts.append("<tr>" + "".join(f"<td>{c}</td>" for c in row) + "</tr>")
            parts.append("</table>")

    if figs:
        parts.append("<h2>Figures</h2>")
        for fig_path in figs:
            data = base64.b64encode(fig_path.read_bytes()).decode("ascii")
            parts.append(f'<div class="fig"><img src="data:{mime};base64,{data}"/>'
                         f"<p>{fig_path.name}</p></div>")

    parts.append("</body></html>")
    out_path = Path(out_path)
    out_path.write_text("\n".join(parts))
    print(f"[report] wrote {out_path} with {len(figs)} figures and {len(tables or [])} tables")
    return out_path
