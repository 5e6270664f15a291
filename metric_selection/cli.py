"""Command-line entry point of the metric-selection pipeline.

Usage::

    python -m metric_selection.cli                                  # simulated data
    python -m metric_selection.cli --reference ref.csv --impaired imp.csv \\
        --metrics grip_force,path_length --effects age,gender
    python -m metric_selection.cli --data pooled.csv --metrics m1,m2,m3 --save-plots --out-dir out

Prints the metric-score table, the partial correlations, the factor
loadings and the abnormality cutoffs.  Exits with status 1 and the error
message when the data or options are invalid.
"""

import argparse
import sys
from pathlib import Path

from metric_selection.config import (
    DEFAULT_EFFECTS, DEFAULT_NUM_FACTORS, NUM_SIM_METRICS, NUM_SIM_SUBJECTS, SEED, PipelineConfig,
)
from metric_selection.errors import MetricSelectionError
from metric_selection.loaders import load_pooled_table, load_population_tables
from metric_selection.pipeline import MetricSelectionPipeline
from metric_selection.reporting import build_html_gallery, result_tables, save_artifacts


def _name_list(text: str):
    return [tok.strip() for tok in text.split(",") if tok.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Select and validate metrics against a reference and an impaired population."
    )
    parser.add_argument("--reference", help="CSV of the reference (healthy) population")
    parser.add_argument("--impaired", help="CSV of the impaired population")
    parser.add_argument("--data", help="Single CSV holding both populations, labelled by a 'group' column")
    parser.add_argument("--metrics", type=_name_list, default=None,
                        help="Comma-separated metric columns (default: all simulated metrics)")
    parser.add_argument("--effects", type=_name_list, default=list(DEFAULT_EFFECTS),
                        help=f"Comma-separated covariates (default: {','.join(DEFAULT_EFFECTS)})")
    parser.add_argument("--num-factors", type=int, default=DEFAULT_NUM_FACTORS,
                        help=f"Factors to extract (default: {DEFAULT_NUM_FACTORS})")
    parser.add_argument("--sim-subjects", type=int, default=NUM_SIM_SUBJECTS,
                        help=f"Simulated subjects per population (default: {NUM_SIM_SUBJECTS})")
    parser.add_argument("--sim-metrics", type=int, default=NUM_SIM_METRICS,
                        help=f"Simulated metrics (default: {NUM_SIM_METRICS})")
    parser.add_argument("--seed", type=int, default=SEED, help=f"Simulation seed (default: {SEED})")
    parser.add_argument("--fit-population", choices=["reference", "pooled"], default="reference",
                        help="Population the confound models are fit on (default: reference)")
    parser.add_argument("--mixed-model", action="store_true",
                        help="Fit confounds with a random subject intercept over test and retest")
    parser.add_argument("--scree", action="store_true", help="Draw the scree plot")
    parser.add_argument("--save-plots", action="store_true", help="Save every figure to OUT_DIR/figures")
    parser.add_argument("--out-dir", default="metric_selection_output",
                        help="Directory for figures, checkpoint and HTML report")
    parser.add_argument("--jobs", type=int, default=1, help="Worker threads for metric scoring")
    parser.add_argument("--quiet", action="store_true", help="Only print the final tables")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    out_dir = Path(args.out_dir)

    if args.data and (args.reference or args.impaired):
        print("Use either --data or --reference/--impaired, not both.", file=sys.stderr)
        return 1
    if bool(args.reference) != bool(args.impaired):
        print("--reference and --impaired must be given together.", file=sys.stderr)
        return 1

    try:
        config = PipelineConfig(
            effects=args.effects,
            metrics=args.metrics,
            num_factors=args.num_factors,
            show_scree_plot=args.scree,
            num_sim_subjects=args.sim_subjects,
            num_sim_metrics=args.sim_metrics,
            save_plots=args.save_plots,
            fig_dir=out_dir / "figures",
            seed=args.seed,
            fit_population=args.fit_population,
            model_kind="mixedlm" if args.mixed_model else "ols",
            n_jobs=args.jobs,
            verbose=not args.quiet,
        )
        reference = impaired = None
        if args.data or args.reference:
            if config.metrics is None:
                print("--metrics is required with --data or --reference/--impaired.", file=sys.stderr)
                return 1
            if args.data:
                reference, impaired = load_pooled_table(args.data, config.effects, config.metrics)
            else:
                reference, impaired = load_population_tables(
                    args.reference, args.impaired, config.effects, config.metrics)
        result = MetricSelectionPipeline(config).run(reference, impaired)
    except MetricSelectionError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    print(result.summary())
    if args.save_plots:
        save_artifacts(result, config, out_dir)
        build_html_gallery(config.fig_dir, out_dir / "report.html", tables=result_tables(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
