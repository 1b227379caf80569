#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Read-only queries over a QIIME-style metadata TSV.

Nothing past the header row is read. The answers drive conditional steps: a
missing column means "skip the tests that need it", while a missing metadata
file is a hard error, because nothing downstream can be trusted without it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

import pandas as pd

from pipeline_errors import MissingMetadata, UnreadableMetadata

# Header names that never act as grouping columns.
_NON_GROUPING = {"description"}

# Identifier headers QIIME 2 accepts despite the leading '#'.
_HASH_ID_HEADERS = {"#SampleID", "#Sample ID", "#OTUID", "#OTU ID"}


def read_metadata_header(metadata_tsv: os.PathLike | str) -> List[str]:
    """Return the header names of a metadata TSV, whitespace-stripped.

    Parameters
    ----------
    metadata_tsv : path-like
        Tab-separated metadata file; the first non-comment row holds column names.

    Returns
    -------
    list of str
        Column names in file order (empty for an empty file).

    Raises
    ------
    MissingMetadata
        If the file does not exist.
    UnreadableMetadata
        If the file is not UTF-8 text.
    """
    path = Path(metadata_tsv)
    if not path.is_file():
        raise MissingMetadata(f"Metadata file not found: {path}", artifact=path)
    skip = _leading_comment_lines(path)
    if skip is None:
        return []
    try:
        header = pd.read_csv(
            path, sep="\t", skiprows=skip, nrows=0, dtype=str,
            encoding="utf-8", skip_blank_lines=False,
        )
    except pd.errors.EmptyDataError:
        return []
    except UnicodeDecodeError as exc:
        raise UnreadableMetadata(
            f"Metadata file {path} is not UTF-8 text ({exc.reason} at byte {exc.start}).",
            artifact=path,
        ) from exc
    return [str(c).strip() for c in header.columns]


def _leading_comment_lines(path: Path) -> Optional[int]:
    """Count blank and '#' comment lines before the header row (None if there is none).

    '#SampleID' style identifier headers are header rows, not comments.
    """
    try:
        with path.open(encoding="utf-8") as fh:
            for n, line in enumerate(fh):
                first = line.rstrip("\r\n").split("\t", 1)[0].strip()
                if not line.strip():
                    continue
                if first.startswith("#") and first not in _HASH_ID_HEADERS:
                    continue
                return n
    except UnicodeDecodeError as exc:
        raise UnreadableMetadata(
            f"Metadata file {path} is not UTF-8 text ({exc.reason} at byte {exc.start}).",
            artifact=path,
        ) from exc
    return None


def list_metadata_columns(metadata_tsv: os.PathLike | str) -> List[str]:
    """Return the columns usable as grouping variables.

    The first column is the sample identifier and is dropped, as are
    comment-style names (leading '#') and 'description'.
    """
    names = read_metadata_header(metadata_tsv)[1:]
    return [
        n for n in names
        if n and not n.startswith("#") and n.lower() not in _NON_GROUPING
    ]


def metadata_has_column(metadata_tsv: os.PathLike | str, column: str) -> bool:
    """Return True if ``column`` is one of the header names (exact match)."""
    return column.strip() in read_metadata_header(metadata_tsv)


class ColumnPresent:
    """Step condition: run only if ``column`` exists in ``metadata_tsv``.

    The file is consulted at evaluation time, not at construction, so a
    metadata file produced or fixed between runs is picked up.
    """

    def __init__(
        self,
        metadata_tsv: os.PathLike | str,
        column: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.metadata_tsv = Path(metadata_tsv)
        self.column = column
        self.logger = logger

    def evaluate(self) -> bool:
        present = metadata_has_column(self.metadata_tsv, self.column)
        if self.logger is not None:
            self.logger.debug(
                "Column '%s' in %s: %s", self.column, self.metadata_tsv, present
            )
        return present

    def describe(self) -> str:
        return f"column '{self.column}' present in {self.metadata_tsv.name}"

    def __repr__(self) -> str:
        return f"ColumnPresent({str(self.metadata_tsv)!r}, {self.column!r})"
