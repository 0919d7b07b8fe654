"""Document store boundary and its two backends.

The ledger only needs five primitives from a store: ``get``, ``put`` (full
overwrite), ``delete``, ``list`` and a ``watch`` change notification. Two
implementations ship with the package:

1. :class:`InMemoryDocumentStore` for tests and throwaway sessions.
2. :class:`WorkbookDocumentStore`, which keeps each collection on its own
   worksheet of an ``openpyxl`` workbook and writes the file after every
   mutation.

Backends translate their own failures into the :mod:`stock_ledger.errors`
taxonomy so the retry controller can classify them without knowing which
backend is in use.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .constants import Collection, StorageErrorCode
from .errors import PermissionDeniedError, StorageError, TransientStorageError


Document = Dict[str, Any]
WatchCallback = Callable[[str, str, Optional[Document]], None]
Unsubscribe = Callable[[], None]

DOCUMENT_HEADERS: Tuple[str, ...] = ("DocumentID", "Document", "UpdatedAt")


class DocumentStore(Protocol):
    """Structural interface every backend satisfies."""

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        ...

    def put(self, collection: str, doc_id: str, document: Document) -> None:
        ...

    def delete(self, collection: str, doc_id: str) -> None:
        ...

    def list(self, collection: str) -> List[Tuple[str, Document]]:
        ...

    def watch(self, collection: str, callback: WatchCallback) -> Unsubscribe:
        ...


class _WatchRegistry:
    """Fan-out of change notifications to per-collection subscribers."""

    def __init__(self) -> None:
        self._watchers: Dict[str, List[WatchCallback]] = {}

    def watch(self, collection: str, callback: WatchCallback) -> Unsubscribe:
        name = _collection_name(collection)
        self._watchers.setdefault(name, []).append(callback)
        log.debug("Registered watcher on collection '%s'", name)

        def unsubscribe() -> None:
            callbacks = self._watchers.get(name, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def _notify(self, collection: str, doc_id: str, document: Optional[Document]) -> None:
        for callback in list(self._watchers.get(collection, [])):
            try:
                callback(collection, doc_id, document)
            except Exception:
                # A broken listener must not undo a write that already landed.
                log.exception("Watcher on '%s' failed for document '%s'", collection, doc_id)


class InMemoryDocumentStore(_WatchRegistry):
    """Dictionary-backed store; documents are copied through JSON on the way in and out."""

    def __init__(self) -> None:
        super().__init__()
        self._collections: Dict[str, Dict[str, str]] = {}

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        raw = self._collections.get(_collection_name(collection), {}).get(doc_id)
        return None if raw is None else json.loads(raw)

    def put(self, collection: str, doc_id: str, document: Document) -> None:
        name = _collection_name(collection)
        encoded = encode_document(document)
        self._collections.setdefault(name, {})[doc_id] = encoded
        self._notify(name, doc_id, json.loads(encoded))

    def delete(self, collection: str, doc_id: str) -> None:
        name = _collection_name(collection)
        if self._collections.get(name, {}).pop(doc_id, None) is not None:
            self._notify(name, doc_id, None)

    def list(self, collection: str) -> List[Tuple[str, Document]]:
        documents = self._collections.get(_collection_name(collection), {})
        return [(doc_id, json.loads(raw)) for doc_id, raw in documents.items()]


class WorkbookDocumentStore(_WatchRegistry):
    """Store documents as JSON rows on per-collection worksheets.

    Each worksheet carries the ``DOCUMENT_HEADERS`` header row. Missing
    worksheets are created lazily on the first write to a collection. The
    workbook is saved to ``data_file`` after every ``put`` and ``delete`` so
    each acknowledged write is durable on disk.
    """

    def __init__(self, data_file: Path) -> None:
        super().__init__()
        self.data_file = Path(data_file).expanduser().resolve()
        self.workbook = open_workbook(self.data_file)

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        sheet = self._sheet(collection, create=False)
        if sheet is None:
            return None
        row_index = locate_row(sheet, doc_id)
        if row_index is None:
            return None
        return decode_document(sheet.cell(row=row_index, column=2).value, doc_id=doc_id)

    def put(self, collection: str, doc_id: str, document: Document) -> None:
        name = _collection_name(collection)
        encoded = encode_document(document)
        sheet_existed = name in self.workbook.sheetnames
        sheet = self._sheet(name, create=True)
        timestamp = datetime.now(UTC).isoformat()
        row_index = locate_row(sheet, doc_id)

        if row_index is None:
            appended_row = sheet.max_row + 1
            for column_index, value in enumerate((doc_id, encoded, timestamp), start=1):
                sheet.cell(row=appended_row, column=column_index, value=value)

            def rollback() -> None:
                if sheet_existed:
                    sheet.delete_rows(appended_row)
                else:
                    self.workbook.remove(sheet)

        else:
            previous = (
                sheet.cell(row=row_index, column=2).value,
                sheet.cell(row=row_index, column=3).value,
            )
            sheet.cell(row=row_index, column=2, value=encoded)
            sheet.cell(row=row_index, column=3, value=timestamp)

            def rollback() -> None:
                sheet.cell(row=row_index, column=2, value=previous[0])
                sheet.cell(row=row_index, column=3, value=previous[1])

        self._persist(rollback)
        self._notify(name, doc_id, json.loads(encoded))

    def delete(self, collection: str, doc_id: str) -> None:
        name = _collection_name(collection)
        sheet = self._sheet(name, create=False)
        if sheet is None:
            return
        row_index = locate_row(sheet, doc_id)
        if row_index is None:
            return
        removed = [cell.value for cell in sheet[row_index]]
        sheet.delete_rows(row_index)

        def rollback() -> None:
            sheet.insert_rows(row_index)
            for column_index, value in enumerate(removed, start=1):
                sheet.cell(row=row_index, column=column_index, value=value)

        self._persist(rollback)
        self._notify(name, doc_id, None)

    def list(self, collection: str) -> List[Tuple[str, Document]]:
        sheet = self._sheet(collection, create=False)
        if sheet is None:
            return []
        documents: List[Tuple[str, Document]] = []
        for raw in sheet.iter_rows(min_row=2, values_only=True):
            if not raw or raw[0] is None:
                continue
            doc_id = str(raw[0])
            documents.append((doc_id, decode_document(raw[1], doc_id=doc_id)))
        return documents

    def _sheet(self, collection: str, *, create: bool) -> Optional[Worksheet]:
        name = _collection_name(collection)
        if name in self.workbook.sheetnames:
            return self.workbook[name]
        if not create:
            return None
        sheet = self.workbook.create_sheet(title=name)
        write_headers(sheet)
        log.info("Created worksheet for collection '%s'", name)
        return sheet

    def _persist(self, rollback: Callable[[], None]) -> None:
        """Save the workbook, undoing the pending in-memory change if the save fails."""

        try:
            save_workbook(self.workbook, self.data_file)
        except OSError as exc:
            rollback()
            log.warning("Write to '%s' failed; in-memory change rolled back", self.data_file)
            if isinstance(exc, PermissionError):
                raise PermissionDeniedError(
                    f"permission-denied: cannot write '{self.data_file}'",
                    original_error=exc,
                ) from exc
            raise TransientStorageError(
                f"connection to storage lost while writing '{self.data_file}': {exc}",
                original_error=exc,
            ) from exc


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook at ``data_file``.

    Raises:
        FileNotFoundError: If the file does not exist after ``~`` expansion.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")
    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Write ``workbook`` to ``destination``, creating parent folders on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def create_workbook(collections: Iterable[str] = tuple(item.value for item in Collection)) -> Workbook:
    """Build an empty ledger workbook with one bold-headed sheet per collection."""

    workbook = openpyxl.Workbook()
    if workbook.active is not None and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)
    for name in collections:
        write_headers(workbook.create_sheet(title=_collection_name(name)))
    return workbook


def write_headers(sheet: Worksheet) -> None:
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(DOCUMENT_HEADERS, start=1):
        cell = sheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font


def locate_row(sheet: Worksheet, doc_id: str) -> Optional[int]:
    """Return the 1-based row holding ``doc_id``, skipping the header row."""

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, max_col=1, values_only=True), start=2):
        if row[0] is not None and str(row[0]) == doc_id:
            return row_idx
    return None


def encode_document(document: Document) -> str:
    """Serialize a document to compact JSON, rejecting non-JSON values."""

    if not isinstance(document, dict):
        raise StorageError(
            f"Document must be a mapping, got {type(document).__name__}",
            code=StorageErrorCode.INVALID_ARGUMENT.value,
        )
    try:
        return json.dumps(document, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise StorageError(
            f"Document is not JSON serializable: {exc}",
            code=StorageErrorCode.INVALID_ARGUMENT.value,
            original_error=exc,
        ) from exc


def decode_document(raw: Any, *, doc_id: str) -> Document:
    if raw is None:
        return {}
    try:
        decoded = json.loads(str(raw))
    except json.JSONDecodeError as exc:
        raise StorageError(
            f"Corrupted document '{doc_id}': {exc}",
            code=StorageErrorCode.INVALID_ARGUMENT.value,
            original_error=exc,
        ) from exc
    if not isinstance(decoded, dict):
        raise StorageError(
            f"Corrupted document '{doc_id}': expected an object",
            code=StorageErrorCode.INVALID_ARGUMENT.value,
        )
    return decoded


def _collection_name(collection: Any) -> str:
    return collection.value if isinstance(collection, Collection) else str(collection)
