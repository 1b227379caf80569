from functools import partial

import pytest

from pipeline_errors import GraphError
from pipeline_steps import Step, build_step_graph, normalise_path


def _noop():
    return None


@pytest.mark.unit
def test_build_step_graph_keeps_declaration_order_and_producers(tmp_path, tool_cmd):
    raw = tmp_path / "raw.txt"
    a_out = tmp_path / "a.out"
    b_out = tmp_path / "b.out"
    steps = [
        Step(step_id="a", inputs=(raw,), outputs=(a_out,), command=tool_cmd(a_out)),
        Step(step_id="b", inputs=(a_out,), outputs=(b_out,), command=tool_cmd(b_out)),
    ]

    graph = build_step_graph(steps, external=[raw])

    assert [s.step_id for s in graph] == ["a", "b"]
    assert len(graph) == 2
    assert graph.producer_of(a_out) == "a"
    assert graph.producer_of(b_out) == "b"
    assert graph.producer_of(raw) is None
    assert normalise_path(raw) in graph.external


@pytest.mark.unit
def test_step_without_inputs_is_accepted(tmp_path, tool_cmd):
    out = tmp_path / "x.out"
    graph = build_step_graph([Step(step_id="x", outputs=(out,), command=tool_cmd(out))])
    assert graph.producer_of(out) == "x"


@pytest.mark.unit
def test_duplicate_step_identifier_is_rejected(tmp_path, tool_cmd):
    steps = [
        Step(step_id="a", outputs=(tmp_path / "1",), command=tool_cmd()),
        Step(step_id="a", outputs=(tmp_path / "2",), command=tool_cmd()),
    ]
    with pytest.raises(GraphError) as exc:
        build_step_graph(steps)
    assert exc.value.step_id == "a"
    assert "Duplicate" in exc.value.message


@pytest.mark.unit
@pytest.mark.parametrize("bad_id", ["", "   "])
def test_empty_step_identifier_is_rejected(tmp_path, tool_cmd, bad_id):
    with pytest.raises(GraphError):
        build_step_graph([Step(step_id=bad_id, outputs=(tmp_path / "o",), command=tool_cmd())])


@pytest.mark.unit
def test_dangling_input_is_rejected_and_named(tmp_path, tool_cmd):
    ghost = tmp_path / "ghost.qza"
    step = Step(step_id="a", inputs=(ghost,), outputs=(tmp_path / "a.out",), command=tool_cmd())
    with pytest.raises(GraphError) as exc:
        build_step_graph([step])
    assert exc.value.artifact == normalise_path(ghost)
    assert exc.value.one_line().startswith("[a] Graph:")


@pytest.mark.unit
def test_forward_reference_is_rejected(tmp_path, tool_cmd):
    a_out = tmp_path / "a.out"
    b_out = tmp_path / "b.out"
    steps = [
        Step(step_id="b", inputs=(a_out,), outputs=(b_out,), command=tool_cmd()),
        Step(step_id="a", outputs=(a_out,), command=tool_cmd()),
    ]
    with pytest.raises(GraphError) as exc:
        build_step_graph(steps)
    assert exc.value.step_id == "b"


@pytest.mark.unit
def test_step_consuming_its_own_output_is_rejected(tmp_path, tool_cmd):
    out = tmp_path / "loop.out"
    with pytest.raises(GraphError, match="own output"):
        build_step_graph([Step(step_id="loop", inputs=(out,), outputs=(out,), command=tool_cmd())])


@pytest.mark.unit
def test_command_and_action_are_mutually_exclusive(tmp_path, tool_cmd):
    out = tmp_path / "o"
    with pytest.raises(GraphError, match="exactly one"):
        build_step_graph([Step(step_id="both", outputs=(out,), command=tool_cmd(), action=_noop)])
    with pytest.raises(GraphError, match="exactly one"):
        build_step_graph([Step(step_id="neither", outputs=(out,))])


@pytest.mark.unit
def test_empty_command_is_rejected(tmp_path):
    with pytest.raises(GraphError, match="Empty command"):
        build_step_graph([Step(step_id="a", outputs=(tmp_path / "o",), command=())])


@pytest.mark.unit
def test_step_without_outputs_is_rejected(tool_cmd):
    with pytest.raises(GraphError, match="at least one output"):
        build_step_graph([Step(step_id="a", command=tool_cmd())])


@pytest.mark.unit
def test_output_claimed_by_two_steps_is_rejected(tmp_path, tool_cmd):
    shared = tmp_path / "shared.qza"
    steps = [
        Step(step_id="a", outputs=(shared,), command=tool_cmd()),
        Step(step_id="b", outputs=(shared,), command=tool_cmd()),
    ]
    with pytest.raises(GraphError, match="already produced by step 'a'"):
        build_step_graph(steps)


@pytest.mark.unit
def test_output_declared_twice_in_one_step_is_rejected(tmp_path, tool_cmd):
    out = tmp_path / "o"
    with pytest.raises(GraphError, match="declared twice"):
        build_step_graph([Step(step_id="a", outputs=(out, out), command=tool_cmd())])


@pytest.mark.unit
def test_output_may_not_overwrite_external_resource(tmp_path, tool_cmd):
    meta = tmp_path / "metadata.tsv"
    with pytest.raises(GraphError, match="externally supplied"):
        build_step_graph(
            [Step(step_id="a", outputs=(meta,), command=tool_cmd())], external=[meta]
        )


@pytest.mark.unit
def test_output_dir_may_not_swallow_other_outputs(tmp_path, tool_cmd):
    div = tmp_path / "diversity"
    steps = [
        Step(step_id="core", outputs=(div / "faith.qza",), output_dir=div, command=tool_cmd()),
        Step(step_id="late", outputs=(div / "extra.qza",), command=tool_cmd()),
    ]
    with pytest.raises(GraphError, match="owned by step 'core'"):
        build_step_graph(steps)

    steps = [
        Step(step_id="early", outputs=(div / "extra.qza",), command=tool_cmd()),
        Step(step_id="core", outputs=(div / "faith.qza",), output_dir=div, command=tool_cmd()),
    ]
    with pytest.raises(GraphError, match="would contain"):
        build_step_graph(steps)


@pytest.mark.unit
def test_paths_are_compared_after_normalisation(tmp_path, tool_cmd):
    out = tmp_path / "x.out"
    alias = tmp_path / "sub" / ".." / "x.out"
    steps = [
        Step(step_id="a", outputs=(out,), command=tool_cmd()),
        Step(step_id="b", inputs=(alias,), outputs=(tmp_path / "y.out",), command=tool_cmd()),
    ]
    graph = build_step_graph(steps)
    assert graph.steps[1].inputs == (out,)


@pytest.mark.unit
def test_render_command(tmp_path, tool_cmd):
    cmd_step = Step(step_id="c", outputs=(tmp_path / "o",), command=("qiime", "info"))
    act_step = Step(step_id="p", outputs=(tmp_path / "o",), action=partial(_noop))
    assert cmd_step.render_command() == "qiime info"
    assert act_step.render_command() == "<python: _noop>"
    assert act_step.title == "p"
