#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
q2_workflow_runner.py

Run the QIIME 2 paired-end workflow end-to-end, resuming where a previous run
stopped.

Example
-------
python q2_workflow_runner.py \
  --data_dir data \
  --metadata_tsv metadata.tsv \
  --out_dir qiime2_output \
  --sampling_depth 10000 \
  --group_columns trial_point sex

Behaviour
---------
- Steps whose outputs all exist are skipped, so re-running after a failure
  picks up at the failed step.
- Group significance steps for metadata columns that are absent are skipped
  with a warning.
- The first failure stops the run with a single ``ERROR:`` line and exit
  status 1. ``step_report.tsv``, ``summary.tsv`` and ``README.md`` are
  written either way.
"""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path
from typing import List, Optional

from metadata_columns import list_metadata_columns
from pipeline_engine import PipelineRun
from pipeline_errors import PipelineError
from pipeline_report import (
    EMPTY_DEPTH_STATS,
    check_sampling_depth,
    log_run_summary,
    summarise_run,
    summarize_depths,
    write_readme,
    write_step_report,
    write_summary_tsv,
)
from pipeline_steps import build_step_graph
from q2_workflow import (
    SILVA_138_99_URL,
    OutputLayout,
    WorkflowSettings,
    check_download_tool,
    check_qiime_available,
    check_qiime_plugins,
    define_steps,
)
from run_logging import log_memory_usage, log_section, script_start_time, setup_logging


def build_arg_parser() -> argparse.ArgumentParser:
    """Construct the command-line interface for the runner.

    Returns
    -------
    argparse.ArgumentParser
        Configured parser with named-only arguments.
    """
    p = argparse.ArgumentParser(
        description="QIIME 2 paired-end workflow (DADA2, Silva taxonomy, core diversity). "
                    "Named arguments only.",
        allow_abbrev=False,
    )
    p.add_argument("--data_dir", default=Path("data"), type=Path,
                   help="Directory with <sample>_1.fastq.gz / <sample>_2.fastq.gz.")
    p.add_argument("--metadata_tsv", default=Path("metadata.tsv"), type=Path,
                   help="QIIME metadata TSV.")
    p.add_argument("--out_dir", default=Path("qiime2_output"), type=Path,
                   help="Output directory (reused on re-runs).")
    p.add_argument("--classifier_qza", default=Path("classifier.qza"), type=Path,
                   help="Pre-trained sklearn classifier.")
    p.add_argument("--classifier_url", default=SILVA_138_99_URL, type=str,
                   help="Where to download the classifier if it is absent; "
                        "pass an empty string to require a local file.")
    p.add_argument("--sampling_depth", default=10000, type=int,
                   help="Rarefaction depth for core metrics and max depth for rarefaction curves.")
    # DADA2
    p.add_argument("--trim_left_f", default=0, type=int, help="DADA2 trim-left F.")
    p.add_argument("--trim_left_r", default=0, type=int, help="DADA2 trim-left R.")
    p.add_argument("--trunc_len_f", default=250, type=int, help="DADA2 trunc-len F.")
    p.add_argument("--trunc_len_r", default=250, type=int, help="DADA2 trunc-len R.")
    p.add_argument("--threads", default=0, type=int, help="DADA2 threads (0 = all cores).")
    p.add_argument("--group_columns", nargs="*", default=["trial_point", "sex"],
                   help="Metadata columns for alpha/beta group significance.")
    p.add_argument("--run_label", default="qiime2_workflow", type=str, help="Run label.")
    return p


def settings_from_args(args: argparse.Namespace) -> WorkflowSettings:
    """Translate parsed arguments into workflow settings (paths made absolute)."""
    return WorkflowSettings(
        data_dir=Path(args.data_dir).expanduser().resolve(),
        metadata_tsv=Path(args.metadata_tsv).expanduser().resolve(),
        out_dir=Path(args.out_dir).expanduser().resolve(),
        classifier_qza=Path(args.classifier_qza).expanduser().resolve(),
        classifier_url=args.classifier_url or None,
        sampling_depth=args.sampling_depth,
        trim_left_f=args.trim_left_f,
        trim_left_r=args.trim_left_r,
        trunc_len_f=args.trunc_len_f,
        trunc_len_r=args.trunc_len_r,
        threads=args.threads,
        group_columns=tuple(args.group_columns),
    )


def _point_tmp_at(tmp: Path) -> None:
    for var in ("TMPDIR", "TEMP", "TMP", "QIIMETMPDIR"):
        os.environ[var] = str(tmp)


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point: preflight, build the step graph, run it, report.

    Returns
    -------
    int
        0 if every step completed or was skipped, 1 otherwise.
    """
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        settings = settings_from_args(args)
    except ValueError as exc:
        parser.error(str(exc))

    layout = OutputLayout(settings.out_dir)
    layout.mkdirs()
    logger = setup_logging(out_dir=layout.root, run_label=args.run_label)
    logger.info("Start time: %s", time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(script_start_time())))
    log_memory_usage(logger=logger, prefix="START")
    logger.info("CWD=%s", Path.cwd())
    _point_tmp_at(layout.temp)

    log_section(logger=logger, title="Preflight")
    try:
        logger.info("qiime=%s", check_qiime_available())
        check_qiime_plugins()
        check_download_tool(settings)
        steps, external = define_steps(settings, layout, logger)
        graph = build_step_graph(steps, external=external)
        if settings.metadata_tsv.exists():
            columns = list_metadata_columns(settings.metadata_tsv)
            logger.info("Metadata columns: %s", ", ".join(columns) or "none")
    except PipelineError as err:
        logger.error("%s", err.one_line())
        return 1

    logger.info("%d step(s) declared.", len(graph))

    run = PipelineRun(graph, logs_dir=layout.logs, logger=logger, parameters=settings.parameters())
    exit_code = 0
    try:
        run.execute()
    except PipelineError:
        exit_code = 1

    log_section(logger=logger, title="Report")
    counts = summarise_run(run)
    try:
        depth_stats = summarize_depths(layout.table_summary_export)
    except ValueError as exc:
        logger.warning("Could not read per-sample frequencies: %s", exc)
        depth_stats = dict(EMPTY_DEPTH_STATS)
    check_sampling_depth(sampling_depth=settings.sampling_depth, depth_stats=depth_stats, logger=logger)
    write_step_report(run, layout.step_report)
    write_summary_tsv(out_dir=layout.root, counts=counts, parameters=run.parameters,
                      depth_stats=depth_stats)
    write_readme(out_dir=layout.root, counts=counts, parameters=run.parameters)
    log_run_summary(logger=logger, run=run, counts=counts)

    if run.error is not None:
        logger.error("%s", run.error.one_line())
    else:
        logger.info("QIIME2 workflow completed successfully. Results in %s", layout.root)
        logger.info("View .qzv files with 'qiime tools view' or at https://view.qiime2.org/")
    log_memory_usage(logger=logger, prefix="END")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
