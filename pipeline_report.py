#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
End-of-run diagnostics.

Written after every run, successful or not:

- ``step_report.tsv``  one row per step: final state, skip reason, failure
  stage, exit status, elapsed seconds, step log;
- ``summary.tsv``      key/value table of counts, the parameter values the
  steps were built with, and per-sample depth statistics;
- ``README.md``        the same values plus pointers for interpretation.

The depth statistics come from the exported feature-table summary and are
used to check the configured rarefaction depth against the shallowest sample.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from statistics import median_low
from typing import Dict, Mapping, Optional, Sequence

import pandas as pd

from pipeline_engine import PipelineRun, StepState
from run_logging import log_section

STEP_REPORT_COLUMNS = [
    "step_id", "state", "reason", "stage", "returncode", "elapsed_s", "log_file", "message",
]

EMPTY_DEPTH_STATS = {"n_samples": 0, "min_depth": 0, "median_depth": 0, "max_depth": 0}


def summarise_run(run: PipelineRun) -> Dict[str, object]:
    """Return step counts plus an overall status ('success' / 'failed' / 'incomplete')."""
    counts: Dict[str, object] = dict(run.state_counts())
    if run.error is not None or counts["failed"]:
        status = "failed"
    elif run.succeeded:
        status = "success"
    else:
        status = "incomplete"
    counts["status"] = status
    return counts


def write_step_report(run: PipelineRun, report_path: Path) -> Path:
    """Write one TSV row per step in execution order."""
    rows = []
    for rec in run.records.values():
        rows.append({
            "step_id": rec.step_id,
            "state": rec.state.value,
            "reason": rec.reason or "NA",
            "stage": rec.stage or "NA",
            "returncode": "NA" if rec.returncode is None else rec.returncode,
            "elapsed_s": round(rec.elapsed_s, 2),
            "log_file": str(rec.log_file) if rec.log_file else "NA",
            "message": " ".join(rec.message.split()) or "NA",
        })
    report_path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows, columns=STEP_REPORT_COLUMNS).to_csv(report_path, sep="\t", index=False)
    return report_path


# ----------------------------- depths ----------------------------- #
def find_sample_frequency_file(export_dir: Path) -> Optional[Path]:
    """
    Locate the per-sample frequency table inside an exported feature-table summary.

    QIIME places it under ``<export_dir>/`` or ``<export_dir>/data/`` depending
    on version, as TSV or CSV.
    """
    candidates: Sequence[Path] = (
        export_dir / "sample-frequency-detail.csv",
        export_dir / "sample-frequency.tsv",
        export_dir / "data" / "sample-frequency.tsv",
        export_dir / "data" / "sample-frequency-detail.csv",
        export_dir / "data" / "sample-frequency-detail.tsv",
    )
    for path in candidates:
        if path.exists():
            return path
    return None


def load_sample_depths(sample_freq_file: Path) -> pd.Series:
    """Load per-sample read depths (ints) from a sample-frequency export.

    Handles both a headed table ('Sample ID' / 'Frequency') and the
    header-less two-column CSV written by newer QIIME releases.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If no frequency column can be identified.
    """
    if not sample_freq_file.exists():
        raise FileNotFoundError(f"Missing {sample_freq_file}")
    sep = "\t" if sample_freq_file.suffix.lower() == ".tsv" else ","

    df = pd.read_csv(sample_freq_file, sep=sep, dtype=str)
    canon = {str(c).strip().lower(): c for c in df.columns}
    freq_col = next((canon[k] for k in canon if "frequency" in k or k == "depth"), None)
    if freq_col is None:
        df = pd.read_csv(sample_freq_file, sep=sep, header=None, dtype=str)
        if df.shape[1] < 2:
            raise ValueError(f"Could not find a frequency column in {sample_freq_file}")
        freq_col = df.columns[1]

    depths = pd.to_numeric(df[freq_col].str.replace(",", "", regex=False), errors="coerce")
    return depths.dropna().astype(float).astype(int)


def summarize_depths(export_dir: Path) -> Dict[str, int]:
    """Summarize per-sample depths from an exported feature-table summary.

    Returns
    -------
    dict
        n_samples, min_depth, median_depth, max_depth (all zero if unavailable).
    """
    freq_file = find_sample_frequency_file(export_dir)
    if freq_file is None:
        return dict(EMPTY_DEPTH_STATS)
    depths = sorted(int(d) for d in load_sample_depths(freq_file))
    if not depths:
        return dict(EMPTY_DEPTH_STATS)
    return {
        "n_samples": len(depths),
        "min_depth": depths[0],
        "median_depth": int(median_low(depths)),
        "max_depth": depths[-1],
    }


def check_sampling_depth(
    *, sampling_depth: int, depth_stats: Mapping[str, int], logger: logging.Logger
) -> Optional[bool]:
    """Warn if the rarefaction depth exceeds the shallowest sample.

    Returns
    -------
    bool or None
        True if every sample reaches the depth, False if not, None if no
        depth statistics were available.
    """
    if not depth_stats.get("n_samples"):
        logger.info(
            "No per-sample frequencies available; check table.qzv to confirm "
            "sampling depth %d.", sampling_depth,
        )
        return None
    min_depth = int(depth_stats["min_depth"])
    if sampling_depth > min_depth:
        logger.warning(
            "Sampling depth %d is above the minimum per-sample frequency (%d); "
            "samples below it are dropped from rarefied analyses. Check table.qzv "
            "and adjust --sampling_depth if needed.",
            sampling_depth, min_depth,
        )
        return False
    logger.info(
        "Sampling depth %d <= minimum per-sample frequency %d.", sampling_depth, min_depth
    )
    return True


# ----------------------------- summary files ----------------------------- #
def write_summary_tsv(
    *,
    out_dir: Path,
    counts: Mapping[str, object],
    parameters: Mapping[str, object],
    depth_stats: Mapping[str, int],
) -> Path:
    """Write a key/value TSV with run status, parameters used and depth stats."""
    rows = [
        ("status", counts.get("status", "NA")),
        ("steps_total", counts.get("total", 0)),
        ("steps_done", counts.get("done", 0)),
        ("steps_skipped", counts.get("skipped", 0)),
        ("steps_failed", counts.get("failed", 0)),
        ("steps_pending", counts.get("pending", 0)),
    ]
    for key, value in parameters.items():
        if isinstance(value, (list, tuple)):
            value = ",".join(map(str, value)) or "NA"
        rows.append((key, value))
    for key in ("n_samples", "min_depth", "median_depth", "max_depth"):
        rows.append((key, depth_stats.get(key, 0)))

    out_fp = out_dir / "summary.tsv"
    with out_fp.open("w", encoding="utf-8", newline="") as fh:
        writer = csv.writer(fh, delimiter="\t")
        writer.writerow(["key", "value"])
        writer.writerows(rows)
    return out_fp


def write_readme(
    *,
    out_dir: Path,
    counts: Mapping[str, object],
    parameters: Mapping[str, object],
) -> Path:
    """Write a concise README.md describing what was run and with which values."""
    p = parameters
    lines = [
        "# QIIME 2 workflow output",
        "",
        f"- **Status:** `{counts.get('status', 'NA')}`",
        f"- **Steps:** {counts.get('done', 0)} run, {counts.get('skipped', 0)} skipped, "
        f"{counts.get('failed', 0)} failed, {counts.get('pending', 0)} not reached "
        f"(of {counts.get('total', 0)})",
        "",
        "## Key values used",
        "1. Data import: paired-end manifest (PairedEndFastqManifestPhred33V2)",
        f"2. Quality control: DADA2 with trim-left-f={p.get('trim_left_f')}, "
        f"trim-left-r={p.get('trim_left_r')}, trunc-len-f={p.get('trunc_len_f')}, "
        f"trunc-len-r={p.get('trunc_len_r')}",
        f"3. Taxonomy: classifier `{p.get('classifier')}`",
        f"4. Diversity analysis: sampling depth = {p.get('sampling_depth')}",
        "",
        "## Key folders",
        "- `visualizations/` – QZV visualisations (open with `qiime tools view` or https://view.qiime2.org/)",
        "- `diversity/` – core phylogenetic diversity artefacts",
        "- `logs/` – per-step command logs and `run_debug.log`",
        "- `step_report.tsv` – final state of every step",
        "",
        "## Interpreting the results",
        "1. Rarefaction curves (alpha-rarefaction.qzv): check the curves plateau, "
        "i.e. sequencing depth is sufficient.",
        "2. Alpha diversity: compare diversity metrics across groups "
        f"({', '.join(map(str, p.get('group_columns') or [])) or 'none'}) "
        "with the group significance tests.",
        "3. Beta diversity: examine community composition differences between "
        "groups with the PERMANOVA tests.",
        "",
    ]
    out_fp = out_dir / "README.md"
    out_fp.write_text("\n".join(lines), encoding="utf-8")
    return out_fp


def log_run_summary(
    *, logger: logging.Logger, run: PipelineRun, counts: Mapping[str, object]
) -> None:
    """Emit the closing summary: each step's state, then the values used."""
    log_section(logger=logger, title="Run summary")
    for rec in run.records.values():
        extra = f" ({rec.reason})" if rec.reason else ""
        if rec.state is StepState.FAILED:
            extra = f" ({rec.stage})"
        logger.info("%02d %-32s %s%s", rec.index, rec.step_id, rec.state.value, extra)
    logger.info(
        "Steps: %s total | %s done | %s skipped | %s failed | %s pending",
        counts.get("total"), counts.get("done"), counts.get("skipped"),
        counts.get("failed"), counts.get("pending"),
    )
    if run.parameters:
        logger.info("Key values used in this analysis:")
        for key, value in run.parameters.items():
            if isinstance(value, (list, tuple)):
                value = ", ".join(map(str, value))
            logger.info("  %s = %s", key, value)
