#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Error taxonomy for the staged workflow runner.

Every failure the runner can report is a ``PipelineError``. All of them are
fatal to a run: there are no retries and no partial continuation. Each error
knows which step failed, which artefact was involved (when there is one) and
at which stage of the step lifecycle the failure happened, so the CLI can print
a single diagnosable line before exiting non-zero.

Stages
------
Graph         step declarations rejected before anything runs
Condition     a step predicate could not be evaluated
SkipCheck     output existence check
Dependency    a required input is missing
Execution     the external tool (or in-process action) failed
Verification  the tool reported success but an output is missing
Preflight     the toolkit or one of its plugins is unavailable
Internal      an unexpected exception inside a step
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class PipelineError(Exception):
    """Base class for all runner failures.

    Parameters
    ----------
    message : str
        Human-readable cause.
    step_id : str, optional
        Identifier of the failing step, if the failure belongs to one.
    artifact : pathlib.Path, optional
        The missing or invalid artefact, if applicable.
    """

    stage = "Pipeline"

    def __init__(
        self,
        message: str,
        *,
        step_id: Optional[str] = None,
        artifact: Optional[Path] = None,
    ) -> None:
        self.message = message
        self.step_id = step_id
        self.artifact = artifact
        super().__init__(message)

    def one_line(self) -> str:
        """Return the single-line diagnostic printed by the CLI."""
        where = f"[{self.step_id}] " if self.step_id else ""
        text = " ".join(self.message.split())
        return f"{where}{self.stage}: {text}"


class GraphError(PipelineError):
    """Malformed step declarations (duplicates, dangling inputs, overlaps)."""

    stage = "Graph"


class UnsatisfiedDependency(PipelineError):
    """A required input artefact is missing when the step is about to run."""

    stage = "Dependency"

    def __init__(
        self,
        message: str,
        *,
        step_id: Optional[str] = None,
        artifact: Optional[Path] = None,
        producer: Optional[str] = None,
    ) -> None:
        super().__init__(message, step_id=step_id, artifact=artifact)
        self.producer = producer


class ToolExecutionError(PipelineError):
    """The external command exited non-zero (or an action raised).

    ``output`` holds the combined stdout/stderr captured for this invocation.
    """

    stage = "Execution"

    def __init__(
        self,
        message: str,
        *,
        step_id: Optional[str] = None,
        returncode: Optional[int] = None,
        output: str = "",
    ) -> None:
        super().__init__(message, step_id=step_id)
        self.returncode = returncode
        self.output = output


class PostconditionViolation(PipelineError):
    """The tool exited successfully but a declared output does not exist."""

    stage = "Verification"


class MissingMetadata(PipelineError):
    """The metadata file a predicate needs is absent."""

    stage = "Condition"


class ToolNotFound(PipelineError):
    """The toolkit executable or a required plugin is not available."""

    stage = "Preflight"


class UnreadableMetadata(MissingMetadata):
    """The metadata file exists but is not readable UTF-8 text."""


class InternalError(PipelineError):
    """An unexpected exception inside a step (filesystem, parsing, ...).

    The original exception is chained as ``__cause__``.
    """

    stage = "Internal"
