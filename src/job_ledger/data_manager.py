"""Data access layer for the job ledger.

This module owns everything that touches the backing workbook. Business rules
belong elsewhere.

The public API is organised around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, persisting and reloading the Excel file.
3. The :class:`RecordStore`: a tenant-partitioned document store laid over
   the workbook, with create/get/update/merge/delete operations and live
   snapshot subscriptions.

Each collection lives on its own worksheet. The first two columns hold the
owning tenant and the document id; every other column is a document field and
is added the first time a document uses it. Scalars are stored as native
cells (dates as Excel timestamps), nested values as tagged JSON text.
"""


from __future__ import annotations

import configparser
import json
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE

from . import log
from .constants import COLLECTION_SHEETS, Collection


CONFIG_FILE_NAME = "config.ini"
TENANT_COLUMN = "TenantID"
DOCUMENT_COLUMN = "DocumentID"
ID_COLUMNS: Tuple[str, str] = (TENANT_COLUMN, DOCUMENT_COLUMN)
JSON_PREFIX = "json:"


class RecordStoreError(Exception):
    """Base class for failures raised by the record store."""


class NotFound(RecordStoreError):
    """Raised when a document no longer exists."""


class StoreUnavailable(RecordStoreError):
    """Raised when the backing workbook cannot be read or written."""


class PermissionDenied(RecordStoreError):
    """Raised when a request has no tenant or the backing file is not writable."""


class ValidationError(Exception):
    """Raised when input fails a local check before anything is written."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    tenant_id: Optional[str] = None
    default_tax_rate: float = 0.0


@dataclass(frozen=True)
class Document:
    """One stored document: its id and a private copy of its fields."""

    id: str
    data: Dict[str, Any] = field(default_factory=dict)


Snapshot = Tuple[Document, ...]
SnapshotCallback = Callable[[Snapshot], None]
ErrorCallback = Callable[[Exception], None]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the data layer.

    If the caller provides ``explicit_path`` it is returned immediately
    without verification. Otherwise the function walks up from the current
    working directory toward the filesystem root and returns the first
    ``CONFIG_FILE_NAME`` it finds.

    Args:
        explicit_path (Path | None): Optional path to use instead of the
            upward search.

    Returns:
        Path: The explicit path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser``.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion
            and resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into :class:`ConfigSettings`.

    ``[System] DataFile`` and ``[System] SchemaVersion`` are required.
    ``[Session] TenantID`` and ``[Defaults] SalesTaxRate`` are optional; a
    missing tenant leaves the session unauthenticated and a missing or
    unreadable rate means no tax. Relative data file paths are anchored to
    ``base_path`` (the current directory when omitted).

    Raises:
        KeyError: If a required section or option is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    tenant_id = parser.get("Session", "TenantID", fallback="").strip() or None
    try:
        default_tax_rate = parser.getfloat("Defaults", "SalesTaxRate", fallback=0.0)
    except ValueError:
        log.warning("Ignoring unreadable SalesTaxRate in configuration")
        default_tax_rate = 0.0

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        tenant_id=tenant_id,
        default_tax_rate=max(default_tax_rate, 0.0),
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def generate_document_id() -> str:
    """Return a fresh 20 character document id."""

    return uuid.uuid4().hex[:20]


def document_path(tenant_id: str, collection: Collection | str, doc_id: str) -> str:
    """Render the namespaced path of a document, e.g. ``tenants/t1/jobs/abc``."""

    return f"tenants/{tenant_id}/{Collection(collection).value}/{doc_id}"


def encode_cell(value: Any) -> Any:
    """Convert a document field value into something a worksheet cell holds.

    Lists and mappings become ``json:``-tagged text. Text that happens to
    start with the tag is tagged as well so decoding stays lossless.
    Timezone-aware datetimes are stored as naive UTC because Excel has no
    notion of time zones.
    """

    if isinstance(value, (list, tuple, dict)):
        return JSON_PREFIX + json.dumps(value)
    if isinstance(value, str) and value.startswith(JSON_PREFIX):
        return JSON_PREFIX + json.dumps(value)
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    if isinstance(value, Decimal):
        return float(value)
    return value


def decode_cell(value: Any) -> Any:
    """Reverse :func:`encode_cell` for a raw worksheet value.

    Raises:
        StoreUnavailable: If a tagged cell does not hold valid JSON.
    """

    if isinstance(value, str) and value.startswith(JSON_PREFIX):
        try:
            return json.loads(value[len(JSON_PREFIX):])
        except json.JSONDecodeError as exc:
            raise StoreUnavailable(f"Malformed stored value: {value[:40]!r}") from exc
    return value


def encode_fields(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Encode every field of ``data`` for storage, rejecting unstorable text.

    Raises:
        ValidationError: If a field name or text value holds a control
            character that worksheet cells cannot carry.
    """

    encoded: Dict[str, Any] = {}
    for name, value in data.items():
        cell_value = encode_cell(value)
        for text in (name, cell_value):
            if isinstance(text, str) and ILLEGAL_CHARACTERS_RE.search(text):
                raise ValidationError(f"Field '{name}' contains a control character that cannot be stored")
        encoded[name] = cell_value
    return encoded


class Subscription:
    """Cancellable handle on a live collection feed.

    The store pushes a full snapshot on subscription and after every change.
    Each delivery is handed to ``on_snapshot``. A subscription opened without
    a callback buffers its deliveries instead and is consumed lazily with
    ``for snapshot in subscription``. Iteration drains what has been delivered so far and
    stops; iterating again later yields newer deliveries. :meth:`restart`
    pushes the current state again, which makes the stream restartable after
    a consumer fell behind.

    Every publish carries a store-wide generation number. A snapshot older
    than one already delivered is dropped, so a write made from inside a
    callback never gets overtaken by the snapshot that triggered it.

    Calling the subscription, or leaving a ``with`` block around it, cancels
    it. A cancelled subscription never receives further deliveries.
    """

    def __init__(
        self,
        store: "RecordStore",
        tenant_id: str,
        collection: Collection,
        on_snapshot: Optional[SnapshotCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._store = store
        self.tenant_id = tenant_id
        self.collection = collection
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._pending: Deque[Snapshot] = deque()
        self._generation = 0
        self.latest: Optional[Snapshot] = None
        self.active = True

    @classmethod
    def detached(
        cls,
        store: "RecordStore",
        collection: Collection | str,
        on_snapshot: Optional[SnapshotCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> "Subscription":
        """Build a feed with no tenant: one empty snapshot, then silence."""

        subscription = cls(store, "", Collection(collection), on_snapshot, on_error)
        subscription.restart()
        return subscription

    def __repr__(self) -> str:
        state = "active" if self.active else "cancelled"
        return f"<Subscription {self.tenant_id}/{self.collection.value} {state}>"

    def __call__(self) -> None:
        self.unsubscribe()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()

    def __iter__(self) -> Iterator[Snapshot]:
        while self._pending:
            yield self._pending.popleft()

    def unsubscribe(self) -> None:
        """Stop deliveries and drop buffered snapshots. Safe to call twice."""

        if not self.active:
            return
        self.active = False
        self._pending.clear()
        self._store._detach(self)
        log.debug("Cancelled subscription on %s/%s", self.tenant_id, self.collection.value)

    def restart(self) -> None:
        """Discard buffered snapshots and push the collection's current state."""

        if not self.active:
            return
        self._pending.clear()
        if not self.tenant_id:
            self._deliver((), self._generation + 1)
            return
        generation = self._store._next_generation()
        try:
            snapshot = self._store.snapshot(self.tenant_id, self.collection)
        except RecordStoreError as exc:
            self._fail(exc)
            return
        self._deliver(snapshot, generation)

    def _deliver(self, snapshot: Snapshot, generation: int) -> None:
        if not self.active or generation <= self._generation:
            return
        self._generation = generation
        self.latest = snapshot
        if self._on_snapshot is None:
            self._pending.append(snapshot)
            return
        try:
            self._on_snapshot(snapshot)
        except Exception as exc:
            self._fail(exc)

    def _fail(self, error: Exception) -> None:
        if self._on_error is None:
            log.error(
                "Subscription on %s/%s failed: %s",
                self.tenant_id,
                self.collection.value,
                error,
            )
            return
        self._on_error(error)


class RecordStore:
    """Tenant-partitioned document store backed by an ``openpyxl`` workbook.

    Writes apply to the in-memory workbook immediately and are fanned out to
    every live subscription of the affected tenant collection before the
    writing call returns, so a caller always sees its own write in the next
    snapshot. Nothing is locked; the last write to a field wins. Call
    :meth:`save` to persist the workbook to its data file.
    """

    def __init__(self, workbook: Workbook, *, data_file: Optional[Path] = None) -> None:
        self.workbook = workbook
        self.data_file = data_file
        self._subscriptions: Dict[Tuple[str, Collection], List[Subscription]] = {}
        self._generation = 0

    # ------------------------------------------------------------------
    # Document operations
    # ------------------------------------------------------------------

    def create(self, tenant_id: str, collection: Collection | str, data: Mapping[str, Any]) -> str:
        """Store a new document and return its generated id."""

        tenant_id = self._require_tenant(tenant_id)
        kind = self._collection(collection)
        fields = encode_fields(data)
        doc_id = generate_document_id()
        sheet = self._sheet(kind)
        header_map = self._ensure_columns(sheet, fields.keys())
        row_index = sheet.max_row + 1
        sheet.cell(row=row_index, column=1, value=tenant_id)
        sheet.cell(row=row_index, column=2, value=doc_id)
        self._write_fields(sheet, row_index, header_map, fields)
        log.info("Created %s", document_path(tenant_id, kind, doc_id))
        self._publish(tenant_id, kind)
        return doc_id

    def get(self, tenant_id: str, collection: Collection | str, doc_id: str) -> Dict[str, Any]:
        """Return a copy of a document's fields.

        Raises:
            NotFound: If the document does not exist for this tenant.
        """

        tenant_id = self._require_tenant(tenant_id)
        kind = self._collection(collection)
        sheet = self._sheet(kind)
        row_index = self._locate_row(sheet, tenant_id, doc_id)
        if row_index is None:
            log.warning("Lookup failed for %s", document_path(tenant_id, kind, doc_id))
            raise NotFound(f"Document not found: {document_path(tenant_id, kind, doc_id)}")
        return self._read_fields(sheet, row_index)

    def update(self, tenant_id: str, collection: Collection | str, doc_id: str, partial: Mapping[str, Any]) -> None:
        """Merge ``partial`` into an existing document.

        Raises:
            NotFound: If the document no longer exists.
        """

        tenant_id = self._require_tenant(tenant_id)
        kind = self._collection(collection)
        sheet = self._sheet(kind)
        row_index = self._locate_row(sheet, tenant_id, doc_id)
        if row_index is None:
            log.warning("Update target missing: %s", document_path(tenant_id, kind, doc_id))
            raise NotFound(f"Document not found: {document_path(tenant_id, kind, doc_id)}")
        fields = encode_fields(partial)
        header_map = self._ensure_columns(sheet, fields.keys())
        self._write_fields(sheet, row_index, header_map, fields)
        log.info("Updated %s (%s)", document_path(tenant_id, kind, doc_id), ", ".join(partial))
        self._publish(tenant_id, kind)

    def set_merge(self, tenant_id: str, collection: Collection | str, doc_id: str, partial: Mapping[str, Any]) -> None:
        """Upsert a document under a caller-chosen id.

        Creates the document with ``partial`` when absent, otherwise merges
        the given top-level fields and leaves every other field untouched.
        """

        tenant_id = self._require_tenant(tenant_id)
        kind = self._collection(collection)
        fields = encode_fields(partial)
        sheet = self._sheet(kind)
        header_map = self._ensure_columns(sheet, fields.keys())
        row_index = self._locate_row(sheet, tenant_id, doc_id)
        if row_index is None:
            row_index = sheet.max_row + 1
            sheet.cell(row=row_index, column=1, value=tenant_id)
            sheet.cell(row=row_index, column=2, value=doc_id)
        self._write_fields(sheet, row_index, header_map, fields)
        log.info("Merged %s (%s)", document_path(tenant_id, kind, doc_id), ", ".join(partial))
        self._publish(tenant_id, kind)

    def delete(self, tenant_id: str, collection: Collection | str, doc_id: str) -> None:
        """Remove a document permanently. Unknown ids are ignored."""

        tenant_id = self._require_tenant(tenant_id)
        kind = self._collection(collection)
        sheet = self._sheet(kind)
        row_index = self._locate_row(sheet, tenant_id, doc_id)
        if row_index is None:
            log.debug("Delete skipped, %s already gone", document_path(tenant_id, kind, doc_id))
            return
        sheet.delete_rows(row_index)
        log.info("Deleted %s", document_path(tenant_id, kind, doc_id))
        self._publish(tenant_id, kind)

    def snapshot(self, tenant_id: str, collection: Collection | str) -> Snapshot:
        """Return every document of a tenant collection in insertion order."""

        tenant_id = self._require_tenant(tenant_id)
        kind = self._collection(collection)
        sheet = self._sheet(kind)
        documents = []
        for row_index, row in enumerate(sheet.iter_rows(min_row=2, max_col=2, values_only=True), start=2):
            if row[0] == tenant_id and row[1] is not None:
                documents.append(Document(id=str(row[1]), data=self._read_fields(sheet, row_index)))
        return tuple(documents)

    def subscribe(
        self,
        tenant_id: str,
        collection: Collection | str,
        on_snapshot: Optional[SnapshotCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Open a live feed of a tenant collection.

        The current snapshot is delivered before this method returns; later
        snapshots follow every change until the returned subscription is
        cancelled.
        """

        tenant_id = self._require_tenant(tenant_id)
        kind = self._collection(collection)
        subscription = Subscription(self, tenant_id, kind, on_snapshot, on_error)
        self._subscriptions.setdefault((tenant_id, kind), []).append(subscription)
        log.debug("Opened subscription on %s/%s", tenant_id, kind.value)
        subscription.restart()
        return subscription

    def subscriber_count(self, tenant_id: str, collection: Collection | str) -> int:
        """Return how many live subscriptions watch a tenant collection."""

        return len(self._subscriptions.get((tenant_id, self._collection(collection)), []))

    def save(self) -> None:
        """Persist the workbook to :attr:`data_file`.

        Raises:
            PermissionDenied: If the operating system refuses the write.
            StoreUnavailable: If there is no data file or the write fails.
        """

        if self.data_file is None:
            raise StoreUnavailable("Record store has no data file to save to")
        try:
            save_workbook(self.workbook, self.data_file)
        except PermissionError as exc:
            raise PermissionDenied(f"Cannot write {self.data_file}: {exc}") from exc
        except OSError as exc:
            raise StoreUnavailable(f"Cannot write {self.data_file}: {exc}") from exc
        log.info("Persisted workbook '%s'", self.data_file)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _detach(self, subscription: Subscription) -> None:
        key = (subscription.tenant_id, subscription.collection)
        subscribers = self._subscriptions.get(key, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscriptions.pop(key, None)

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _publish(self, tenant_id: str, collection: Collection) -> None:
        subscribers = list(self._subscriptions.get((tenant_id, collection), []))
        if not subscribers:
            return
        generation = self._next_generation()
        try:
            snapshot = self.snapshot(tenant_id, collection)
        except RecordStoreError as exc:
            log.error("Could not build %s/%s snapshot: %s", tenant_id, collection.value, exc)
            for subscription in subscribers:
                subscription._fail(exc)
            return
        for subscription in subscribers:
            subscription._deliver(snapshot, generation)

    @staticmethod
    def _require_tenant(tenant_id: Optional[str]) -> str:
        if not tenant_id:
            raise PermissionDenied("No tenant is signed in")
        return str(tenant_id)

    @staticmethod
    def _collection(collection: Collection | str) -> Collection:
        try:
            return Collection(collection)
        except ValueError as exc:
            raise KeyError(f"Unknown collection: {collection}") from exc

    def _sheet(self, collection: Collection) -> Worksheet:
        sheet_name = COLLECTION_SHEETS[collection].value
        if sheet_name not in self.workbook.sheetnames:
            sheet = self.workbook.create_sheet(title=sheet_name)
            sheet.append(list(ID_COLUMNS))
            log.info("Created missing worksheet '%s'", sheet_name)
            return sheet
        sheet = self.workbook[sheet_name]
        header = tuple(cell.value for cell in sheet[1][:2])
        if header != ID_COLUMNS:
            raise StoreUnavailable(f"Worksheet '{sheet_name}' has an unexpected header: {header}")
        return sheet

    @staticmethod
    def _header_map(sheet: Worksheet) -> Dict[str, int]:
        return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}

    def _ensure_columns(self, sheet: Worksheet, fields: Iterable[str]) -> Dict[str, int]:
        header_map = self._header_map(sheet)
        for name in fields:
            if name in ID_COLUMNS:
                raise KeyError(f"Reserved field name: {name}")
            if name not in header_map:
                column = max(header_map.values(), default=0) + 1
                sheet.cell(row=1, column=column, value=name)
                header_map[name] = column
        return header_map

    @staticmethod
    def _write_fields(sheet: Worksheet, row_index: int, header_map: Mapping[str, int], fields: Mapping[str, Any]) -> None:
        for name, value in fields.items():
            sheet.cell(row=row_index, column=header_map[name], value=value)

    def _read_fields(self, sheet: Worksheet, row_index: int) -> Dict[str, Any]:
        header_map = self._header_map(sheet)
        fields: Dict[str, Any] = {}
        for name, column in header_map.items():
            if name in ID_COLUMNS:
                continue
            value = sheet.cell(row=row_index, column=column).value
            if value is not None:
                fields[name] = decode_cell(value)
        return fields

    @staticmethod
    def _locate_row(sheet: Worksheet, tenant_id: str, doc_id: str) -> Optional[int]:
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, max_col=2, values_only=True), start=2):
            if row[0] == tenant_id and row[1] == doc_id:
                return row_idx
        return None


def open_store(settings: ConfigSettings) -> RecordStore:
    """Open the configured workbook and wrap it in a :class:`RecordStore`."""

    workbook = open_workbook(settings.data_file)
    log.info("Opened record store '%s'", settings.data_file)
    return RecordStore(workbook, data_file=settings.data_file)
