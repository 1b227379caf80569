"""Shared fixtures: stand-in command-line tools and a quiet logger."""

import logging
import sys

import pytest

_TOOL_SRC = (
    "import pathlib, sys\n"
    "code, *paths = sys.argv[1:]\n"
    "for p in map(pathlib.Path, paths):\n"
    "    p.parent.mkdir(parents=True, exist_ok=True)\n"
    "    p.write_text('ok\\n')\n"
    "print('tool wrote', len(paths), 'file(s)')\n"
    "sys.exit(int(code))\n"
)


@pytest.fixture
def tool_cmd():
    """Return a factory for argv tuples that write ``paths`` and exit with ``exit_code``."""

    def _make(*paths, exit_code=0):
        return (sys.executable, "-c", _TOOL_SRC, str(exit_code), *map(str, paths))

    return _make


@pytest.fixture
def logger():
    log = logging.getLogger("pipeline_tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def metadata_tsv(tmp_path):
    path = tmp_path / "metadata.tsv"
    path.write_text(
        "sample-id\ttrial_point\tsex_at_birth\tdescription\n"
        "#q2:types\tcategorical\tcategorical\tcategorical\n"
        "S1\tT0\tF\tfirst\n"
        "S2\tT1\tM\tsecond\n",
        encoding="utf-8",
    )
    return path
