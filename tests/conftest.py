import pytest

from edxlogs.assembler import OutputLayout
from edxlogs.config import FormatterConfig
from edxlogs.loader import CourseStructure

import eventlog_factory as factory


@pytest.fixture
def structure():
    return CourseStructure(factory.structure_table())


@pytest.fixture
def raw_events():
    return factory.frame(factory.realistic_rows())


@pytest.fixture
def config():
    return FormatterConfig()


@pytest.fixture
def layout(tmp_path):
    out = OutputLayout(tmp_path / "out")
    out.ensure()
    return out


@pytest.fixture
def write_user(tmp_path):
    """Write raw rows as {user_id}.csv into an input directory and return the directory."""
    input_dir = tmp_path / "raw"
    input_dir.mkdir()

    def _write(user_id, df):
        df.to_csv(input_dir / f"{user_id}.csv", index=False)
        return input_dir

    return _write
