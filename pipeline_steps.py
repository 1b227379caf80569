#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Step model and step graph builder.

A workflow is declared as an ordered list of ``Step`` objects. Each step names
the artefacts it needs, the artefacts it promises to produce, and the work to
do: either an external command (argv tokens, never run through a shell) or an
in-process callable for small jobs such as writing a manifest.

``build_step_graph`` validates the declarations before anything runs:

- step identifiers are non-empty and unique;
- every input is an externally supplied resource or an output of an *earlier*
  step, so declaration order is already a topological order and cycles cannot
  be expressed;
- every artefact has exactly one producer and never shadows an external
  resource;
- a directory a tool creates itself (``output_dir``) does not swallow another
  step's outputs.

Artefacts are plain paths. Existence on disk is the only completion signal.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from pipeline_errors import GraphError


class Condition(Protocol):
    """Anything a step can be gated on."""

    def evaluate(self) -> bool:
        ...

    def describe(self) -> str:
        ...


def normalise_path(path: os.PathLike | str) -> Path:
    """Return an absolute, user-expanded path with '..' segments collapsed."""
    return Path(os.path.abspath(Path(path).expanduser()))


def _is_within(path: Path, directory: Path) -> bool:
    try:
        path.relative_to(directory)
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class Step:
    """One unit of workflow work.

    Attributes
    ----------
    step_id : str
        Stable identifier, unique within a workflow.
    inputs : tuple of Path
        Artefacts that must exist before the step runs.
    outputs : tuple of Path
        Artefacts the step must produce.
    command : tuple of str, optional
        External command tokens.
    action : callable, optional
        In-process alternative to ``command``; takes no arguments.
    condition : Condition, optional
        Predicate evaluated first; ``False`` skips the step.
    output_dir : Path, optional
        Directory the tool creates itself and refuses to reuse.
    description : str
        Short human-readable title for logs.
    """

    step_id: str
    inputs: Tuple[Path, ...] = ()
    outputs: Tuple[Path, ...] = ()
    command: Optional[Tuple[str, ...]] = None
    action: Optional[Callable[[], None]] = field(default=None, compare=False)
    condition: Optional[Condition] = field(default=None, compare=False)
    output_dir: Optional[Path] = None
    description: str = ""

    def __post_init__(self) -> None:
        # Normalise in place; frozen dataclasses need object.__setattr__.
        object.__setattr__(self, "inputs", tuple(normalise_path(p) for p in self.inputs))
        object.__setattr__(self, "outputs", tuple(normalise_path(p) for p in self.outputs))
        if self.command is not None:
            object.__setattr__(self, "command", tuple(str(t) for t in self.command))
        if self.output_dir is not None:
            object.__setattr__(self, "output_dir", normalise_path(self.output_dir))

    @property
    def title(self) -> str:
        return self.description or self.step_id

    def render_command(self) -> str:
        """Return the command as a single loggable string."""
        if self.command is not None:
            return " ".join(self.command)
        func = getattr(self.action, "func", self.action)  # functools.partial
        name = getattr(func, "__name__", repr(func))
        return f"<python: {name}>"


@dataclass
class StepGraph:
    """Validated steps in execution order plus artefact ownership."""

    steps: List[Step]
    producers: Dict[Path, str]
    external: frozenset

    def __iter__(self):
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def producer_of(self, artifact: Path) -> Optional[str]:
        """Return the id of the step that produces ``artifact`` (None if external)."""
        return self.producers.get(normalise_path(artifact))


def build_step_graph(
    steps: Sequence[Step],
    *,
    external: Iterable[os.PathLike | str] = (),
) -> StepGraph:
    """Validate step declarations and return an executable graph.

    Parameters
    ----------
    steps : sequence of Step
        Declarations in intended execution order.
    external : iterable of path-like
        Resources supplied from outside the workflow (reads, metadata, ...).

    Returns
    -------
    StepGraph
        The same steps, in the same order, with a producer map.

    Raises
    ------
    GraphError
        On duplicate/empty identifiers, missing or double work definitions,
        dangling or forward input references, or overlapping outputs.
    """
    ext = frozenset(normalise_path(p) for p in external)
    seen_ids: set[str] = set()
    producers: Dict[Path, str] = {}
    tool_dirs: Dict[Path, str] = {}

    for step in steps:
        sid = step.step_id
        if not sid or not sid.strip():
            raise GraphError("Step identifier must be a non-empty string.")
        if sid in seen_ids:
            raise GraphError(f"Duplicate step identifier '{sid}'.", step_id=sid)
        if (step.command is None) == (step.action is None):
            raise GraphError(
                "A step needs exactly one of 'command' or 'action'.", step_id=sid
            )
        if step.command is not None and not step.command:
            raise GraphError("Empty command.", step_id=sid)
        if not step.outputs:
            # Completion is judged by outputs alone.
            raise GraphError("A step must declare at least one output.", step_id=sid)

        for art in step.inputs:
            if art in ext or art in producers:
                continue
            if art in step.outputs:
                raise GraphError(
                    f"Step consumes its own output {art}.", step_id=sid, artifact=art
                )
            raise GraphError(
                f"Input {art} is neither externally supplied nor produced by an "
                f"earlier step.",
                step_id=sid,
                artifact=art,
            )

        local: set[Path] = set()
        for art in step.outputs:
            if art in local:
                raise GraphError(
                    f"Output {art} declared twice.", step_id=sid, artifact=art
                )
            local.add(art)
            if art in producers:
                raise GraphError(
                    f"Output {art} is already produced by step '{producers[art]}'.",
                    step_id=sid,
                    artifact=art,
                )
            if art in ext:
                raise GraphError(
                    f"Output {art} would overwrite an externally supplied resource.",
                    step_id=sid,
                    artifact=art,
                )
            for d, owner in tool_dirs.items():
                if _is_within(art, d):
                    raise GraphError(
                        f"Output {art} lies inside directory {d} owned by step "
                        f"'{owner}'.",
                        step_id=sid,
                        artifact=art,
                    )

        if step.output_dir is not None:
            od = step.output_dir
            for art, owner in producers.items():
                if _is_within(art, od):
                    raise GraphError(
                        f"Output directory {od} would contain {art} from step "
                        f"'{owner}'.",
                        step_id=sid,
                        artifact=od,
                    )
            tool_dirs[od] = sid

        for art in step.outputs:
            producers[art] = sid
        seen_ids.add(sid)

    return StepGraph(steps=list(steps), producers=producers, external=ext)
