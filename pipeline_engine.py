#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Execution engine for a validated step graph.

Steps run strictly one at a time, in declaration order. For each step:

    Pending -> (Condition) -> (SkipCheck) -> Skipped
                                          -> Running -> Verifying -> Done
                                                                   -> Failed

- Condition: a false predicate skips the step (reason ``ConditionNotMet``).
- SkipCheck: if every declared output already exists, the step is skipped
  (reason ``OutputsPresent``); this is what makes a re-run resume.
- Dependency: every input must exist before the tool is started.
- Running: the external command's stdout/stderr are appended to a per-step log.
- Verifying: every declared output must exist after a successful exit.

The first failure halts the run; later steps stay pending. Nothing is retried.
Whatever a failed tool left among its outputs is renamed to
``<name>_stale_<timestamp>``, so the next run starts that step afresh.
Unexpected exceptions inside a step are reported as ``InternalError``.
"""

from __future__ import annotations

import logging
import subprocess
import time
import traceback
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from pipeline_errors import (
    InternalError,
    PipelineError,
    PostconditionViolation,
    ToolExecutionError,
    UnsatisfiedDependency,
)
from pipeline_steps import Step, StepGraph
from run_logging import get_logger, log_section

OUTPUTS_PRESENT = "OutputsPresent"
CONDITION_NOT_MET = "ConditionNotMet"

# Lines of tool output echoed to the log when a command fails.
_TAIL_LINES = 20


class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    VERIFYING = "verifying"
    SKIPPED = "skipped"
    DONE = "done"
    FAILED = "failed"


@dataclass
class StepRecord:
    """Mutable per-run state of one step."""

    step_id: str
    index: int
    state: StepState = StepState.PENDING
    reason: str = ""
    stage: str = ""
    message: str = ""
    returncode: Optional[int] = None
    elapsed_s: float = 0.0
    log_file: Optional[Path] = None


# ----------------------------- helpers ----------------------------- #
def run_cmd(
    *, cmd: Sequence[str], log_file: Path, logger: Optional[logging.Logger] = None
) -> Tuple[int, str]:
    """
    Run a command with all stdout/stderr appended to a step log.

    Parameters
    ----------
    cmd : sequence of str
        Command tokens (no shell=True).
    log_file : pathlib.Path
        Path to the step-specific log file.
    logger : Optional[logging.Logger]
        If provided, logs the command and destination log file.

    Returns
    -------
    tuple of (int, str)
        Exit status (127 if the executable could not be launched) and the
        output written during this invocation.
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    if logger is not None:
        logger.info("▶ %s", " ".join(cmd))
        logger.debug("Step log: %s", log_file)

    with log_file.open("a", encoding="utf-8") as lf:
        lf.write("$ " + " ".join(cmd) + "\n")
        lf.flush()
        start = log_file.stat().st_size
        try:
            proc = subprocess.run(list(cmd), stdout=lf, stderr=subprocess.STDOUT, check=False)
            returncode = proc.returncode
        except OSError as exc:
            lf.write(f"{exc}\n")
            returncode = 127

    with log_file.open("rb") as fh:
        fh.seek(start)
        output = fh.read().decode("utf-8", errors="replace")
    return returncode, output


def _tail(text: str, n: int = _TAIL_LINES) -> List[str]:
    lines = [ln for ln in text.splitlines() if ln.strip()]
    return lines[-n:]


def _move_aside(path: Path) -> Path:
    """Rename ``path`` to ``<name>_stale_<timestamp>`` and return the new path."""
    ts = datetime.now().strftime("%Y%m%d-%H%M%S")
    alt = path.with_name(f"{path.name}_stale_{ts}")
    n = 1
    while alt.exists():
        alt = path.with_name(f"{path.name}_stale_{ts}_{n}")
        n += 1
    path.rename(alt)
    return alt


# ----------------------------- run ----------------------------- #
class PipelineRun:
    """One execution of a step graph.

    Parameters
    ----------
    graph : StepGraph
        Output of ``build_step_graph``.
    logs_dir : pathlib.Path
        Where per-step logs are written (``NN_<step_id>.log``).
    logger : logging.Logger, optional
        Defaults to the runner logger.
    parameters : mapping, optional
        Values the steps were built with; carried for reporting only.
    """

    def __init__(
        self,
        graph: StepGraph,
        *,
        logs_dir: Path,
        logger: Optional[logging.Logger] = None,
        parameters: Optional[Mapping[str, object]] = None,
    ) -> None:
        self.graph = graph
        self.logs_dir = Path(logs_dir)
        self.logger = logger or get_logger()
        self.parameters: Dict[str, object] = dict(parameters or {})
        self.records: Dict[str, StepRecord] = {}
        for i, step in enumerate(graph, start=1):
            self.records[step.step_id] = StepRecord(
                step_id=step.step_id,
                index=i,
                log_file=self.logs_dir / f"{i:02d}_{step.step_id}.log",
            )
        self.error: Optional[PipelineError] = None
        self.started = False
        self.finished = False

    @property
    def succeeded(self) -> bool:
        return self.finished and self.error is None

    def state_of(self, step_id: str) -> StepState:
        return self.records[step_id].state

    def state_counts(self) -> Dict[str, int]:
        """Return total/done/skipped/failed/pending counts."""
        states = [r.state for r in self.records.values()]
        return {
            "total": len(states),
            "done": states.count(StepState.DONE),
            "skipped": states.count(StepState.SKIPPED),
            "failed": states.count(StepState.FAILED),
            "pending": states.count(StepState.PENDING),
        }

    def execute(self) -> Dict[str, int]:
        """Run every step in order.

        Returns
        -------
        dict
            ``state_counts()`` after the last step.

        Raises
        ------
        PipelineError
            The first failure; the failing step is marked ``failed`` and no
            later step is started.
        RuntimeError
            If this run has already been executed.
        """
        if self.started:
            raise RuntimeError("A PipelineRun executes once; create a new run to re-run.")
        self.started = True
        try:
            for step in self.graph:
                self._run_step(step, self.records[step.step_id])
        finally:
            self.finished = True
        return self.state_counts()

    # ----------------------------- per step ----------------------------- #
    def _run_step(self, step: Step, rec: StepRecord) -> None:
        log_section(logger=self.logger, title=f"Step {rec.index}: {step.title}")
        t0 = time.perf_counter()
        try:
            if step.condition is not None and not self._condition_holds(step, rec):
                return
            if all(p.exists() for p in step.outputs):
                rec.state = StepState.SKIPPED
                rec.reason = OUTPUTS_PRESENT
                self.logger.info(
                    "Skipping '%s': all %d output(s) already present.",
                    step.step_id, len(step.outputs),
                )
                return
            self._check_inputs(step)
            rec.state = StepState.RUNNING
            self._prepare_outputs(step)
            self._invoke(step, rec)
            rec.state = StepState.VERIFYING
            self._verify_outputs(step)
            rec.state = StepState.DONE
            self.logger.info("Done: %s", step.step_id)
        except PipelineError as err:
            self._fail(step, rec, err)
            raise
        except Exception as exc:
            err = InternalError(f"{type(exc).__name__}: {exc}", step_id=step.step_id)
            self._fail(step, rec, err)
            raise err from exc
        finally:
            rec.elapsed_s = time.perf_counter() - t0

    def _fail(self, step: Step, rec: StepRecord, err: PipelineError) -> None:
        if err.step_id is None:
            err.step_id = step.step_id
        tool_ran = rec.state in (StepState.RUNNING, StepState.VERIFYING)
        rec.state = StepState.FAILED
        rec.stage = err.stage
        rec.message = err.message
        if isinstance(err, ToolExecutionError):
            rec.returncode = err.returncode
        self.error = err
        if tool_ran:
            self._quarantine_outputs(step)

    def _condition_holds(self, step: Step, rec: StepRecord) -> bool:
        # MissingMetadata propagates: no metadata is fatal, no column is not.
        if step.condition.evaluate():
            return True
        rec.state = StepState.SKIPPED
        rec.reason = CONDITION_NOT_MET
        rec.message = f"Condition not met: {step.condition.describe()}"
        self.logger.warning(
            "Skipping '%s': %s is false.", step.step_id, step.condition.describe()
        )
        return False

    def _check_inputs(self, step: Step) -> None:
        for art in step.inputs:
            if art.exists():
                continue
            producer = self.graph.producer_of(art)
            source = f"step '{producer}'" if producer else "externally supplied"
            raise UnsatisfiedDependency(
                f"Required input {art} is missing (expected from {source}).",
                step_id=step.step_id,
                artifact=art,
                producer=producer,
            )

    def _prepare_outputs(self, step: Step) -> None:
        od = step.output_dir
        if od is not None:
            if od.exists():
                # Outputs were incomplete or we would have skipped.
                alt = _move_aside(od)
                self.logger.warning(
                    "Output directory %s already exists from an earlier run; moved to %s.",
                    od, alt,
                )
            od.parent.mkdir(parents=True, exist_ok=True)
        for art in step.outputs:
            if od is not None and od in art.parents:
                continue
            art.parent.mkdir(parents=True, exist_ok=True)

    def _invoke(self, step: Step, rec: StepRecord) -> None:
        log_file = rec.log_file
        if step.command is not None:
            returncode, output = run_cmd(cmd=step.command, log_file=log_file, logger=self.logger)
            rec.returncode = returncode
            if returncode != 0:
                for line in _tail(output):
                    self.logger.error("  | %s", line)
                raise ToolExecutionError(
                    f"'{step.command[0]}' exited with status {returncode} "
                    f"(log: {log_file}).",
                    step_id=step.step_id,
                    returncode=returncode,
                    output=output,
                )
            return

        self.logger.info("▶ %s", step.render_command())
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as lf:
            lf.write("$ " + step.render_command() + "\n")
            try:
                step.action()
            except Exception as exc:
                detail = traceback.format_exc()
                lf.write(detail)
                raise ToolExecutionError(
                    f"{step.render_command()} failed: {exc}",
                    step_id=step.step_id,
                    output=detail,
                ) from exc

    def _verify_outputs(self, step: Step) -> None:
        missing = [p for p in step.outputs if not p.exists()]
        if not missing:
            return
        more = f" (and {len(missing) - 1} more)" if len(missing) > 1 else ""
        raise PostconditionViolation(
            f"Command succeeded but did not produce {missing[0]}{more}.",
            step_id=step.step_id,
            artifact=missing[0],
        )

    def _quarantine_outputs(self, step: Step) -> None:
        # Outputs of a failed tool must not satisfy SkipCheck on the next run.
        od = step.output_dir
        leftovers = [od] if od is not None and od.exists() else []
        leftovers += [
            p for p in step.outputs
            if p.exists() and not (od is not None and od in p.parents)
        ]
        for path in leftovers:
            try:
                alt = _move_aside(path)
            except OSError as exc:
                self.logger.error(
                    "Step '%s' failed and %s could not be moved aside (%s); remove it "
                    "before re-running.", step.step_id, path, exc,
                )
                continue
            self.logger.warning(
                "Step '%s' failed; moved its output %s to %s.", step.step_id, path, alt
            )
