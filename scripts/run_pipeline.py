"""Metric-selection pipeline -- thin wrapper around metric_selection.cli.

Lets ``python scripts/run_pipeline.py`` work from the repository root
without installing the package.

CLI usage::

    python scripts/run_pipeline.py --sim-subjects 100 --sim-metrics 5 --save-plots
    python scripts/run_pipeline.py --data data/pooled.csv --metrics m1,m2,m3
"""

import os
import sys

# Make the repository root importable when run as a plain script.
REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, REPO_ROOT)

from metric_selection.cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
