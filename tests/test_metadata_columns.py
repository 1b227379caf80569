import pytest

from metadata_columns import (
    ColumnPresent,
    list_metadata_columns,
    metadata_has_column,
    read_metadata_header,
)
from pipeline_errors import MissingMetadata, UnreadableMetadata


@pytest.mark.unit
def test_list_metadata_columns_drops_identifier_and_description(metadata_tsv):
    assert read_metadata_header(metadata_tsv)[0] == "sample-id"
    assert list_metadata_columns(metadata_tsv) == ["trial_point", "sex_at_birth"]


@pytest.mark.unit
def test_metadata_has_column_is_exact_match(metadata_tsv):
    assert metadata_has_column(metadata_tsv, "trial_point")
    # 'sex' only appears as a substring of another header
    assert not metadata_has_column(metadata_tsv, "sex")
    # values are never matched
    assert not metadata_has_column(metadata_tsv, "T0")


@pytest.mark.unit
def test_header_whitespace_is_ignored(tmp_path):
    meta = tmp_path / "m.tsv"
    meta.write_text("sample-id\t trial_point \n S1\tT0\n", encoding="utf-8")
    assert metadata_has_column(meta, "trial_point")


@pytest.mark.unit
def test_missing_metadata_file_raises(tmp_path):
    with pytest.raises(MissingMetadata) as exc:
        metadata_has_column(tmp_path / "absent.tsv", "sex")
    assert exc.value.stage == "Condition"
    assert exc.value.artifact == tmp_path / "absent.tsv"


@pytest.mark.unit
def test_empty_metadata_file_has_no_columns(tmp_path):
    meta = tmp_path / "empty.tsv"
    meta.write_text("", encoding="utf-8")
    assert read_metadata_header(meta) == []
    assert not metadata_has_column(meta, "sex")


@pytest.mark.unit
def test_column_present_reads_file_when_evaluated(tmp_path, logger):
    meta = tmp_path / "metadata.tsv"
    cond = ColumnPresent(meta, "sex", logger=logger)
    with pytest.raises(MissingMetadata):
        cond.evaluate()

    meta.write_text("sample-id\tsex\nS1\tF\n", encoding="utf-8")
    assert cond.evaluate() is True
    assert cond.describe() == "column 'sex' present in metadata.tsv"


@pytest.mark.unit
def test_comment_and_blank_lines_before_header_are_skipped(tmp_path):
    meta = tmp_path / "metadata.tsv"
    meta.write_text(
        "# exported from the sample sheet\n"
        "\n"
        "sample-id\ttrial_point\tsex\n"
        "#q2:types\tcategorical\tcategorical\n"
        "S1\tT0\tF\n",
        encoding="utf-8",
    )
    assert list_metadata_columns(meta) == ["trial_point", "sex"]
    assert metadata_has_column(meta, "sex")


@pytest.mark.unit
def test_hash_sample_id_header_is_the_header(tmp_path):
    meta = tmp_path / "metadata.tsv"
    meta.write_text("#SampleID\tsex\nS1\tF\n", encoding="utf-8")
    assert read_metadata_header(meta) == ["#SampleID", "sex"]
    assert list_metadata_columns(meta) == ["sex"]


@pytest.mark.unit
def test_comment_only_file_has_no_columns(tmp_path):
    meta = tmp_path / "metadata.tsv"
    meta.write_text("# nothing here yet\n", encoding="utf-8")
    assert read_metadata_header(meta) == []


@pytest.mark.unit
def test_non_utf8_metadata_is_reported(tmp_path):
    meta = tmp_path / "metadata.tsv"
    meta.write_bytes("sample-id\tsite_\xe9t\xe9\nS1\ta\n".encode("latin-1"))
    with pytest.raises(UnreadableMetadata) as exc:
        list_metadata_columns(meta)
    assert isinstance(exc.value, MissingMetadata)
    assert "not UTF-8" in exc.value.one_line()
