#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
QIIME 2 paired-end workflow, declared as runner steps.

Overview
--------
Import paired-end FASTQs via a manifest, denoise with DADA2, build a
MAFFT/FastTree phylogeny, assign taxonomy with a pre-trained sklearn
classifier (Silva 138 99% by default, downloaded if absent), compute core
phylogenetic diversity metrics and rarefaction curves, then run alpha and beta
group significance for each requested metadata column that actually exists.

Design choices
--------------
- Every QIIME call is a ``Step`` with explicit inputs and outputs; resuming a
  partial run is just running it again.
- Group significance steps are conditional on the metadata column; a missing
  column skips them with a warning.
- The manifest is PairedEndFastqManifestPhred33V2 (TSV, absolute paths).
- The rarefaction depth is a setting (default 10000), reported with the run.

Notes
-----
- All tables written here are tab-separated (TSV).
- UK English spelling is used in docstrings; QIIME option names are verbatim.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from metadata_columns import ColumnPresent
from pipeline_errors import ToolNotFound
from pipeline_steps import Step

SILVA_138_99_URL = "https://data.qiime2.org/2023.5/common/silva-138-99-nb-classifier.qza"

# plugin name in `qiime --help` -> conda package providing it
REQUIRED_PLUGINS: Dict[str, str] = {
    "dada2": "qiime2-dada2-plugin",
    "phylogeny": "qiime2-phylogeny-plugin",
    "feature-classifier": "qiime2-feature-classifier",
    "diversity": "qiime2-diversity-plugin",
}

CONDA_CHANNELS = "-c bioconda -c conda-forge -c qiime2 -c defaults"


@dataclass(frozen=True)
class WorkflowSettings:
    """Inputs and parameters of one workflow run (defaults match a bare invocation)."""

    data_dir: Path = Path("data")
    metadata_tsv: Path = Path("metadata.tsv")
    out_dir: Path = Path("qiime2_output")
    classifier_qza: Path = Path("classifier.qza")
    classifier_url: Optional[str] = SILVA_138_99_URL
    sampling_depth: int = 10000
    trim_left_f: int = 0
    trim_left_r: int = 0
    trunc_len_f: int = 250
    trunc_len_r: int = 250
    threads: int = 0
    group_columns: Tuple[str, ...] = ("trial_point", "sex")
    forward_suffix: str = "_1.fastq.gz"
    reverse_suffix: str = "_2.fastq.gz"

    def __post_init__(self) -> None:
        if self.sampling_depth <= 0:
            raise ValueError("sampling_depth must be a positive integer.")
        # Drop blanks and repeats, keep order.
        cols: List[str] = []
        for c in self.group_columns:
            c = c.strip()
            if c and c not in cols:
                cols.append(c)
        object.__setattr__(self, "group_columns", tuple(cols))

    def parameters(self) -> Dict[str, object]:
        """Return the parameter values steps are built with, for reporting."""
        return {
            "sampling_depth": self.sampling_depth,
            "trim_left_f": self.trim_left_f,
            "trim_left_r": self.trim_left_r,
            "trunc_len_f": self.trunc_len_f,
            "trunc_len_r": self.trunc_len_r,
            "threads": self.threads,
            "classifier": str(self.classifier_qza),
            "classifier_url": self.classifier_url or "NA",
            "group_columns": list(self.group_columns),
        }


class OutputLayout:
    """Container for key filesystem paths used in the run.

    Attributes
    ----------
    root : Path
        Root directory for all results (artefacts sit directly under it).
    visuals : Path
        QIIME 2 visualisations (.qzv).
    temp : Path
        Manifest and tool scratch space (TMPDIR for child processes).
    diversity : Path
        Created by core-metrics-phylogenetic itself.
    exports : Path
        Exported visualisations used for reporting.
    logs : Path
        Per-step logs plus run_debug.log.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.visuals = self.root / "visualizations"
        self.temp = self.root / "temp"
        self.diversity = self.root / "diversity"
        self.exports = self.root / "exports"
        self.logs = self.root / "logs"
        self.manifest = self.temp / "manifest.tsv"
        self.table_summary_export = self.exports / "table_summary"
        self.step_report = self.root / "step_report.tsv"

    def mkdirs(self) -> None:
        """Create the directories every run needs (not those tools create)."""
        for p in (self.root, self.visuals, self.temp, self.logs):
            p.mkdir(parents=True, exist_ok=True)

    def artefact(self, name: str) -> Path:
        return self.root / name

    def visual(self, name: str) -> Path:
        return self.visuals / name


# ------------------------ reads and manifest ------------------------ #
def discover_read_pairs(
    *, data_dir: Path, forward_suffix: str, reverse_suffix: str
) -> List[Tuple[str, Path, Path]]:
    """
    Pair forward and reverse FASTQs by filename suffix.

    ``<sample><forward_suffix>`` pairs with ``<sample><reverse_suffix>`` in the
    same directory. Forward files without a reverse mate are ignored.

    Returns
    -------
    list of (sample_id, r1_path, r2_path)
        Absolute paths, sorted by sample id.
    """
    rows: List[Tuple[str, Path, Path]] = []
    if not data_dir.is_dir():
        return rows
    for fwd in sorted(data_dir.glob(f"*{forward_suffix}")):
        sample = fwd.name[: -len(forward_suffix)]
        rev = fwd.with_name(sample + reverse_suffix)
        if sample and rev.is_file():
            rows.append((sample, fwd.resolve(), rev.resolve()))
    return rows


def write_paired_manifest(*, rows: Sequence[Tuple[str, Path, Path]], out_path: Path) -> None:
    """Write a PairedEndFastqManifestPhred33V2 TSV.

    The file is written under a temporary name and renamed, so an interrupted
    write never leaves a manifest that looks complete.

    Raises
    ------
    ValueError
        If there are no read pairs.
    """
    if not rows:
        raise ValueError(
            "No paired FASTQ files found; expected <sample>_1.fastq.gz with a "
            "matching <sample>_2.fastq.gz."
        )
    out_path.parent.mkdir(parents=True, exist_ok=True)
    tmp = out_path.with_name(out_path.name + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        fh.write("sample-id\tforward-absolute-filepath\treverse-absolute-filepath\n")
        for sid, r1, r2 in rows:
            fh.write(f"{sid}\t{r1}\t{r2}\n")
    os.replace(tmp, out_path)


# ----------------------------- preflight ----------------------------- #
def check_qiime_available() -> str:
    """Return the path of the `qiime` executable or raise ToolNotFound."""
    exe = shutil.which("qiime")
    if not exe:
        raise ToolNotFound(
            "QIIME2 is not activated. Please activate your QIIME2 environment "
            "first, e.g. 'conda activate qiime2-2023.5'."
        )
    return exe


def check_qiime_plugins(plugins: Sequence[str] = tuple(REQUIRED_PLUGINS)) -> None:
    """Raise ToolNotFound unless every plugin is listed by `qiime --help`."""
    proc = subprocess.run(
        ["qiime", "--help"], stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
        text=True, check=False,
    )
    if proc.returncode != 0:
        raise ToolNotFound(f"'qiime --help' exited with status {proc.returncode}.")
    missing = [p for p in plugins if p not in proc.stdout]
    if missing:
        hints = "; ".join(
            f"conda install {CONDA_CHANNELS} {REQUIRED_PLUGINS.get(p, 'q2-' + p)}"
            for p in missing
        )
        raise ToolNotFound(
            f"QIIME 2 plugin(s) not available: {', '.join(missing)}. Install with: {hints}"
        )


def check_download_tool(settings: WorkflowSettings) -> None:
    """The classifier download needs `wget` only if the classifier is absent."""
    if settings.classifier_qza.exists() or not settings.classifier_url:
        return
    if shutil.which("wget") is None:
        raise ToolNotFound(
            f"'wget' is needed to download the classifier. Download it manually "
            f"from {settings.classifier_url} and place it at {settings.classifier_qza}."
        )


# ----------------------------- steps ----------------------------- #
def _slug(column: str) -> str:
    return column.replace("_", "-").replace(" ", "-")


def define_steps(
    settings: WorkflowSettings,
    layout: OutputLayout,
    logger: Optional[logging.Logger] = None,
) -> Tuple[List[Step], List[Path]]:
    """Declare the workflow.

    Parameters
    ----------
    settings : WorkflowSettings
        Inputs and parameters.
    layout : OutputLayout
        Output tree.
    logger : logging.Logger, optional
        Passed to metadata conditions for debug messages.

    Returns
    -------
    tuple of (list of Step, list of Path)
        Steps in execution order and the externally supplied resources.
    """
    s = settings
    a = layout.artefact
    v = layout.visual
    metadata = s.metadata_tsv

    pairs = discover_read_pairs(
        data_dir=s.data_dir, forward_suffix=s.forward_suffix, reverse_suffix=s.reverse_suffix
    )
    reads = [p for _, r1, r2 in pairs for p in (r1, r2)]
    external: List[Path] = [metadata, *reads]
    if not s.classifier_url:
        external.append(s.classifier_qza)

    demux = a("demux-paired-end.qza")
    table = a("table.qza")
    rep_seqs = a("rep-seqs.qza")
    stats = a("denoising-stats.qza")
    rooted = a("rooted-tree.qza")
    taxonomy = a("taxonomy.qza")
    div = layout.diversity
    faith = div / "faith_pd_vector.qza"
    shannon = div / "shannon_vector.qza"
    unweighted = div / "unweighted_unifrac_distance_matrix.qza"
    weighted = div / "weighted_unifrac_distance_matrix.qza"

    steps: List[Step] = [
        Step(
            step_id="manifest",
            description="Prepare manifest file for importing data",
            inputs=tuple(reads),
            outputs=(layout.manifest,),
            action=partial(write_paired_manifest, rows=pairs, out_path=layout.manifest),
        ),
        Step(
            step_id="import",
            description="Import data into QIIME2",
            inputs=(layout.manifest,),
            outputs=(demux,),
            command=(
                "qiime", "tools", "import",
                "--type", "SampleData[PairedEndSequencesWithQuality]",
                "--input-path", str(layout.manifest),
                "--input-format", "PairedEndFastqManifestPhred33V2",
                "--output-path", str(demux),
            ),
        ),
        Step(
            step_id="demux_summary",
            description="Summarise imported reads (choose trimming parameters here)",
            inputs=(demux,),
            outputs=(v("demux-paired-end.qzv"),),
            command=(
                "qiime", "demux", "summarize",
                "--i-data", str(demux),
                "--o-visualization", str(v("demux-paired-end.qzv")),
            ),
        ),
        Step(
            step_id="dada2_denoise",
            description="DADA2 quality control and denoising",
            inputs=(demux,),
            outputs=(table, rep_seqs, stats),
            command=(
                "qiime", "dada2", "denoise-paired",
                "--i-demultiplexed-seqs", str(demux),
                "--p-trim-left-f", str(s.trim_left_f),
                "--p-trim-left-r", str(s.trim_left_r),
                "--p-trunc-len-f", str(s.trunc_len_f),
                "--p-trunc-len-r", str(s.trunc_len_r),
                "--o-table", str(table),
                "--o-representative-sequences", str(rep_seqs),
                "--o-denoising-stats", str(stats),
                "--p-n-threads", str(s.threads),
            ),
        ),
        Step(
            step_id="denoising_stats_viz",
            inputs=(stats,),
            outputs=(v("denoising-stats.qzv"),),
            command=(
                "qiime", "metadata", "tabulate",
                "--m-input-file", str(stats),
                "--o-visualization", str(v("denoising-stats.qzv")),
            ),
        ),
        Step(
            step_id="table_summary",
            description="Feature table summary (per-sample frequencies)",
            inputs=(table, metadata),
            outputs=(v("table.qzv"),),
            command=(
                "qiime", "feature-table", "summarize",
                "--i-table", str(table),
                "--o-visualization", str(v("table.qzv")),
                "--m-sample-metadata-file", str(metadata),
            ),
        ),
        Step(
            step_id="table_summary_export",
            inputs=(v("table.qzv"),),
            outputs=(layout.table_summary_export / "index.html",),
            command=(
                "qiime", "tools", "export",
                "--input-path", str(v("table.qzv")),
                "--output-path", str(layout.table_summary_export),
            ),
        ),
        Step(
            step_id="rep_seqs_viz",
            inputs=(rep_seqs,),
            outputs=(v("rep-seqs.qzv"),),
            command=(
                "qiime", "feature-table", "tabulate-seqs",
                "--i-data", str(rep_seqs),
                "--o-visualization", str(v("rep-seqs.qzv")),
            ),
        ),
        Step(
            step_id="phylogeny",
            description="Build phylogenetic tree",
            inputs=(rep_seqs,),
            outputs=(
                a("aligned-rep-seqs.qza"), a("masked-aligned-rep-seqs.qza"),
                a("unrooted-tree.qza"), rooted,
            ),
            command=(
                "qiime", "phylogeny", "align-to-tree-mafft-fasttree",
                "--i-sequences", str(rep_seqs),
                "--o-alignment", str(a("aligned-rep-seqs.qza")),
                "--o-masked-alignment", str(a("masked-aligned-rep-seqs.qza")),
                "--o-tree", str(a("unrooted-tree.qza")),
                "--o-rooted-tree", str(rooted),
            ),
        ),
    ]

    if s.classifier_url:
        # Skipped by the engine once the classifier file exists.
        at = next(i for i, st in enumerate(steps) if st.step_id == "demux_summary") + 1
        steps.insert(at, Step(
            step_id="classifier_download",
            description="Download pre-trained classifier",
            outputs=(s.classifier_qza,),
            command=("wget", "-O", str(s.classifier_qza), s.classifier_url),
        ))

    steps += [
        Step(
            step_id="taxonomy",
            description="Assign taxonomy",
            inputs=(s.classifier_qza, rep_seqs),
            outputs=(taxonomy,),
            command=(
                "qiime", "feature-classifier", "classify-sklearn",
                "--i-classifier", str(s.classifier_qza),
                "--i-reads", str(rep_seqs),
                "--o-classification", str(taxonomy),
            ),
        ),
        Step(
            step_id="taxonomy_viz",
            inputs=(taxonomy,),
            outputs=(v("taxonomy.qzv"),),
            command=(
                "qiime", "metadata", "tabulate",
                "--m-input-file", str(taxonomy),
                "--o-visualization", str(v("taxonomy.qzv")),
            ),
        ),
        Step(
            step_id="taxa_barplot",
            inputs=(table, taxonomy, metadata),
            outputs=(v("taxa-bar-plots.qzv"),),
            command=(
                "qiime", "taxa", "barplot",
                "--i-table", str(table),
                "--i-taxonomy", str(taxonomy),
                "--m-metadata-file", str(metadata),
                "--o-visualization", str(v("taxa-bar-plots.qzv")),
            ),
        ),
        Step(
            step_id="core_metrics",
            description=f"Core phylogenetic diversity metrics (sampling depth {s.sampling_depth})",
            inputs=(rooted, table, metadata),
            outputs=(faith, shannon, unweighted, weighted, div / "rarefied_table.qza"),
            output_dir=div,
            command=(
                "qiime", "diversity", "core-metrics-phylogenetic",
                "--i-phylogeny", str(rooted),
                "--i-table", str(table),
                "--p-sampling-depth", str(s.sampling_depth),
                "--m-metadata-file", str(metadata),
                "--output-dir", str(div),
            ),
        ),
        Step(
            step_id="alpha_rarefaction",
            description="Rarefaction curves",
            inputs=(table, rooted, metadata),
            outputs=(v("alpha-rarefaction.qzv"),),
            command=(
                "qiime", "diversity", "alpha-rarefaction",
                "--i-table", str(table),
                "--i-phylogeny", str(rooted),
                "--p-max-depth", str(s.sampling_depth),
                "--m-metadata-file", str(metadata),
                "--o-visualization", str(v("alpha-rarefaction.qzv")),
            ),
        ),
    ]

    for col in s.group_columns:
        for metric, vector in (("faith_pd", faith), ("shannon", shannon)):
            out = v(f"{_slug(metric)}-group-significance-{_slug(col)}.qzv")
            steps.append(Step(
                step_id=f"alpha_{metric}_{col}",
                description=f"Alpha group significance ({metric}) by {col}",
                inputs=(vector, metadata),
                outputs=(out,),
                condition=ColumnPresent(metadata, col, logger=logger),
                command=(
                    "qiime", "diversity", "alpha-group-significance",
                    "--i-alpha-diversity", str(vector),
                    "--m-metadata-file", str(metadata),
                    "--o-visualization", str(out),
                    "--m-metadata-column", col,
                ),
            ))

    for col in s.group_columns:
        for metric, matrix in (("unweighted_unifrac", unweighted), ("weighted_unifrac", weighted)):
            out = v(f"{_slug(metric)}-{_slug(col)}-significance.qzv")
            steps.append(Step(
                step_id=f"beta_{metric}_{col}",
                description=f"Beta group significance ({metric}, PERMANOVA) by {col}",
                inputs=(matrix, metadata),
                outputs=(out,),
                condition=ColumnPresent(metadata, col, logger=logger),
                command=(
                    "qiime", "diversity", "beta-group-significance",
                    "--i-distance-matrix", str(matrix),
                    "--m-metadata-file", str(metadata),
                    "--m-metadata-column", col,
                    "--o-visualization", str(out),
                    "--p-pairwise",
                ),
            ))

    return steps, external
