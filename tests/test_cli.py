"""Tests for the typed-orm command line tool."""

import pytest

from typed_orm.cli import main

SCHEMA = """
table person {
    id: int auto primary
    name: string
}

table pet lock {
    id: int auto primary
    kind: string default "cat"
    owner_id: int nullable -> person as owner reverse pets
}

association friend {
    person_id -> person as friends
    other_id -> person as friend_of
}
"""


@pytest.fixture
def schema_file(tmp_path):
    path = tmp_path / "pets.schema"
    path.write_text(SCHEMA)
    return path


class TestCheck:
    """Tests for the check command."""

    def test_check_ok(self, schema_file, capsys):
        """Test that a valid schema reports its size."""
        result = main(["check", str(schema_file)])

        assert result == 0
        assert capsys.readouterr().out == "OK: 2 table(s), 1 association(s)\n"

    def test_missing_file(self, tmp_path, capsys):
        """Test that a missing file is an error."""
        result = main(["check", str(tmp_path / "nope.schema")])

        assert result == 1
        assert "Error: File not found" in capsys.readouterr().err

    def test_syntax_error(self, tmp_path, capsys):
        """Test that a malformed schema is an error."""
        path = tmp_path / "bad.schema"
        path.write_text("table person { id int }")

        result = main(["check", str(path)])

        assert result == 1
        assert capsys.readouterr().err.startswith("Error: ")

    def test_invalid_schema(self, tmp_path, capsys):
        """Test that a schema failing resolution is an error."""
        path = tmp_path / "bad.schema"
        path.write_text("table t { name: string }")

        result = main(["check", str(path)])

        assert result == 1
        assert "no primary key" in capsys.readouterr().err

    def test_command_required(self):
        """Test that a command must be given."""
        with pytest.raises(SystemExit):
            main([])


class TestDescribe:
    """Tests for the describe command."""

    def test_describe(self, schema_file, capsys):
        """Test the listing of tables, columns and relationships."""
        result = main(["describe", str(schema_file)])
        lines = capsys.readouterr().out.splitlines()

        assert result == 0
        assert "table person" in lines
        assert "  id: int (primary, auto)" in lines
        assert "  name: string" in lines
        assert "table pet [locked]" in lines
        assert "  kind: string (default 'cat')" in lines
        assert "  owner_id: int (nullable)" in lines
        assert "  lock_token: string (nullable)" in lines
        assert "  .owner -> person via owner_id, nullable" in lines
        assert "  .pets <- pet.owner_id (many), nullable" in lines
        assert "  .friends <-> person through friend" in lines
        assert "association friend (person_id, other_id)" in lines
