"""Tests for import file readers."""

import pytest

from payroll_recon.errors import NotFoundError, ValidationError
from payroll_recon.reconciliation import (
    CsvFileReader,
    InMemoryFileReader,
    get_file_reader,
)
from payroll_recon.reconciliation.file_reader import parse_csv_text


class TestParseCsvText:
    """Tests for CSV parsing."""

    def test_quoted_cells(self):
        """Test that quoted cells keep their commas."""
        rows = parse_csv_text('Payee,Amount\n"Smith, Ann","1,500.00"\n')
        assert rows == [["Payee", "Amount"], ["Smith, Ann", "1,500.00"]]

    def test_max_rows(self):
        """Test the row cap."""
        with pytest.raises(ValidationError) as exc_info:
            parse_csv_text("a\n1\n2\n", max_rows=2)
        assert exc_info.value.message == "Import exceeds the maximum of 2 rows."


class TestCsvFileReader:
    """Tests for reading CSV files from disk."""

    async def test_read_relative_to_base_dir(self, tmp_path):
        """Test resolving a relative storage URI."""
        (tmp_path / "bank.csv").write_text("Payee,Amount\nAnn,150.00\n", encoding="utf-8")
        data = await CsvFileReader(base_dir=str(tmp_path)).read("bank.csv")
        assert data.rows == [["Payee", "Amount"], ["Ann", "150.00"]]

    async def test_file_scheme_and_bom(self, tmp_path):
        """Test the file:// prefix and a UTF-8 byte order mark."""
        path = tmp_path / "register.csv"
        path.write_bytes("\ufeffEmployee ID,Net Pay\nE001,150.00\n".encode("utf-8"))
        data = await CsvFileReader().read(f"file://{path}")
        assert data.rows[0] == ["Employee ID", "Net Pay"]

    async def test_missing_file(self, tmp_path):
        """Test that a missing file is NotFound."""
        with pytest.raises(NotFoundError) as exc_info:
            await CsvFileReader(base_dir=str(tmp_path)).read("missing.csv")
        assert exc_info.value.message == "Import file not found."
        assert exc_info.value.details == {"storage_uri": "missing.csv"}

    async def test_invalid_encoding(self, tmp_path):
        """Test that undecodable bytes are a validation error."""
        (tmp_path / "bad.csv").write_bytes(b"\xff\xfe\xfa")
        with pytest.raises(ValidationError):
            await CsvFileReader(base_dir=str(tmp_path)).read("bad.csv")


class TestInMemoryFileReader:
    """Tests for the in-memory reader."""

    async def test_text_and_grid_contents(self):
        """Test that both CSV text and row grids are served."""
        reader = InMemoryFileReader({"memory://a.csv": "x,y\n1,2\n"})
        reader.put("memory://b.csv", [["x", "y"], [1, 2]])

        assert (await reader.read("memory://a.csv")).rows == [["x", "y"], ["1", "2"]]
        data = await reader.read("memory://b.csv", sheet_name="Sheet1")
        assert data.rows == [["x", "y"], ["1", "2"]]
        assert data.sheet_name == "Sheet1"
        assert reader.reads == ["memory://a.csv", "memory://b.csv"]

    async def test_missing_uri(self):
        """Test that unknown URIs are NotFound."""
        with pytest.raises(NotFoundError):
            await InMemoryFileReader().read("memory://nothing.csv")

    async def test_grid_row_cap(self):
        """Test the row cap on grid contents."""
        reader = InMemoryFileReader({"memory://a.csv": [["x"], ["1"], ["2"]]})
        with pytest.raises(ValidationError):
            await reader.read("memory://a.csv", max_rows=2)


class TestGetFileReader:
    """Tests for the reader factory."""

    def test_known_kinds(self, tmp_path):
        """Test constructing each reader kind."""
        reader = get_file_reader("CSV", base_dir=str(tmp_path))
        assert isinstance(reader, CsvFileReader)
        assert reader.base_dir == tmp_path
        assert isinstance(get_file_reader("memory"), InMemoryFileReader)

    def test_unsupported_kind(self):
        """Test that unknown kinds raise ValueError."""
        with pytest.raises(ValueError, match="Unsupported file reader: xlsx"):
            get_file_reader("xlsx")
