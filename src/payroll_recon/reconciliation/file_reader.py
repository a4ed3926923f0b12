"""Import file readers.

Readers turn a stored import into the normalized row grid the engine
consumes. Decoding rules for binary formats live outside this package.
"""

import csv
import io
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..errors import NotFoundError, ValidationError
from .models import ImportFileData

logger = logging.getLogger(__name__)

FILE_SCHEME = "file://"


def parse_csv_text(text: str, max_rows: Optional[int] = None) -> List[List[str]]:
    """Parse CSV text into a row grid.

    Args:
        text: Decoded CSV contents.
        max_rows: Optional row cap.

    Returns:
        Rows of string cells.

    Raises:
        ValidationError: If the CSV is malformed or exceeds ``max_rows``.
    """
    try:
        rows = [list(row) for row in csv.reader(io.StringIO(text))]
    except csv.Error as e:
        raise ValidationError(f"Unable to parse CSV file: {e}") from e
    if max_rows is not None and len(rows) > max_rows:
        raise ValidationError(f"Import exceeds the maximum of {max_rows} rows.")
    return rows


class FileReaderBase(ABC):
    """Base class for import file readers."""

    @abstractmethod
    async def read(
        self,
        storage_uri: str,
        sheet_name: Optional[str] = None,
        max_rows: Optional[int] = None,
    ) -> ImportFileData:
        """Read a stored import.

        Args:
            storage_uri: Where the import's bytes are stored.
            sheet_name: Sheet to read for workbook formats.
            max_rows: Optional row cap.

        Returns:
            ImportFileData with the row grid.

        Raises:
            ValidationError: If the file is malformed.
            NotFoundError: If nothing is stored at ``storage_uri``.
        """
        raise NotImplementedError


class CsvFileReader(FileReaderBase):
    """Reads CSV imports from the local filesystem.

    Args:
        base_dir: Directory relative storage URIs are resolved against.
        encoding: Text encoding; the default strips a UTF-8 BOM.
    """

    def __init__(self, base_dir: Optional[str] = None, encoding: str = "utf-8-sig"):
        self.base_dir = Path(base_dir) if base_dir else None
        self.encoding = encoding

    def _resolve_path(self, storage_uri: str) -> Path:
        raw = storage_uri[len(FILE_SCHEME):] if storage_uri.startswith(FILE_SCHEME) else storage_uri
        path = Path(raw)
        if not path.is_absolute() and self.base_dir is not None:
            path = self.base_dir / path
        return path

    async def read(
        self,
        storage_uri: str,
        sheet_name: Optional[str] = None,
        max_rows: Optional[int] = None,
    ) -> ImportFileData:
        path = self._resolve_path(storage_uri)
        try:
            text = path.read_text(encoding=self.encoding)
        except FileNotFoundError as e:
            raise NotFoundError("Import file not found.", details={"storage_uri": storage_uri}) from e
        except UnicodeDecodeError as e:
            raise ValidationError("Import file is not valid text.") from e

        rows = parse_csv_text(text, max_rows)
        logger.info(f"Read {len(rows)} rows from {path.name}")
        return ImportFileData(rows=rows)


class InMemoryFileReader(FileReaderBase):
    """Serves imports from a dict of storage URI to CSV text or row grid.

    Used by tests and by callers that already hold file contents.
    """

    def __init__(self, files: Optional[Dict[str, Union[str, List[List[str]]]]] = None):
        self.files: Dict[str, Union[str, List[List[str]]]] = dict(files or {})
        self.reads: List[str] = []

    def put(self, storage_uri: str, contents: Union[str, List[List[str]]]) -> None:
        self.files[storage_uri] = contents

    async def read(
        self,
        storage_uri: str,
        sheet_name: Optional[str] = None,
        max_rows: Optional[int] = None,
    ) -> ImportFileData:
        self.reads.append(storage_uri)
        if storage_uri not in self.files:
            raise NotFoundError("Import file not found.", details={"storage_uri": storage_uri})
        contents = self.files[storage_uri]
        if isinstance(contents, str):
            rows = parse_csv_text(contents, max_rows)
        else:
            rows = [[str(cell) for cell in row] for row in contents]
            if max_rows is not None and len(rows) > max_rows:
                raise ValidationError(f"Import exceeds the maximum of {max_rows} rows.")
        return ImportFileData(rows=rows, sheet_name=sheet_name)


def get_file_reader(kind: str = "csv", **kwargs) -> FileReaderBase:
    """Factory function to get a file reader.

    Args:
        kind: Reader kind, ``csv`` or ``memory``.
        **kwargs: Passed to the reader's constructor.

    Raises:
        ValueError: If the kind is not supported.
    """
    readers = {
        "csv": CsvFileReader,
        "memory": InMemoryFileReader,
    }

    reader_class = readers.get(kind.lower())
    if not reader_class:
        raise ValueError(f"Unsupported file reader: {kind}")

    return reader_class(**kwargs)
