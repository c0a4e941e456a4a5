import sqlite3
import json
import logging
from collections.abc import Mapping
from typing import Dict, Iterator, List, Optional, Set
import uuid
from pacurhoja import config
from pacurhoja.formula import DependencyGraph, Bounds, canonical, evaluate, in_bounds, recalculate
from pacurhoja.models import CellResult, FormatTag, Sheet

logger = logging.getLogger(__name__)

APH_FILENAME = "hoja_calculo.aph"


class SheetStore(Mapping):
    """Raw contents and format tags of one sheet, keyed by address ('A1').

    Only addresses inside the grid are accepted. Computed values are cached
    until the next edit; edits are recalculated incrementally.
    """

    def __init__(self, cells: Optional[Dict[str, str]] = None,
                 formats: Optional[Dict[str, FormatTag]] = None,
                 max_rows: Optional[int] = None, max_cols: Optional[int] = None):
        self.max_rows = max_rows or config.MAX_ROWS
        self.max_cols = max_cols or config.MAX_COLS
        self._cells: Dict[str, str] = {}
        self._formats: Dict[str, FormatTag] = {}
        self._values: Optional[Dict[str, CellResult]] = None
        self._changed: Set[str] = set()
        for address, raw in (cells or {}).items():
            self.set_raw(address, raw)
        for address, tag in (formats or {}).items():
            self.set_format(address, tag)

    @property
    def bounds(self) -> Bounds:
        return self.max_rows, self.max_cols

    def _check(self, address: str) -> str:
        address = address.strip().upper() if isinstance(address, str) else ""
        if not in_bounds(address, self.bounds):
            raise ValueError(
                f"Invalid address {address!r}: must be A1-style inside the "
                f"{self.max_rows}x{self.max_cols} grid"
            )
        return canonical(address)

    def _key(self, address: str) -> str:
        """Canonical form of a lookup key; anything else never matches a cell."""
        try:
            return canonical(address.strip().upper())
        except (AttributeError, ValueError):
            return ""

    # ── Mapping protocol (what the engine reads) ──────────────────

    def __getitem__(self, address: str) -> str:
        return self._cells[address]

    def __iter__(self) -> Iterator[str]:
        return iter(self._cells)

    def __len__(self) -> int:
        return len(self._cells)

    # ── Editing surface ───────────────────────────────────────────

    def get_raw(self, address: str) -> str:
        return self._cells.get(self._key(address), "")

    def get_format(self, address: str) -> Optional[FormatTag]:
        return self._formats.get(self._key(address))

    def set_raw(self, address: str, value: str) -> str:
        """Store raw content; an empty string clears the cell."""
        address = self._check(address)
        if not isinstance(value, str):
            raise ValueError(f"Cell content must be text: {address}")
        if value:
            self._cells[address] = value
        else:
            self._cells.pop(address, None)
        self._changed.add(address)
        return address

    def set_format(self, address: str, tag: Optional[FormatTag]) -> str:
        address = self._check(address)
        if tag is None:
            self._formats.pop(address, None)
        else:
            self._formats[address] = FormatTag(tag)
        self._changed.add(address)
        return address

    def clear(self) -> None:
        self._cells.clear()
        self._formats.clear()
        self._values = None
        self._changed.clear()

    @property
    def cells(self) -> Dict[str, str]:
        return dict(self._cells)

    @property
    def formats(self) -> Dict[str, FormatTag]:
        return dict(self._formats)

    # ── Evaluation ────────────────────────────────────────────────

    def evaluate(self, address: str) -> CellResult:
        """Lazy: evaluate one cell from scratch."""
        return evaluate(self, self._check(address), self._formats, bounds=self.bounds)

    def values(self) -> Dict[str, CellResult]:
        """Eager: results for every non-empty cell, recomputing what edits touched."""
        if self._values is None:
            self._values = recalculate(self, self._formats, bounds=self.bounds)
        elif self._changed:
            self._values = recalculate(self, self._formats, changed=self._changed,
                                       previous=self._values, bounds=self.bounds)
        self._changed = set()
        return dict(self._values)

    def dependents(self, address: str) -> List[str]:
        """Formula cells that transitively read *address*."""
        address = self._check(address)
        formulas = {a: raw for a, raw in self._cells.items() if raw.startswith('=')}
        return sorted(DependencyGraph(formulas, self.bounds).affected({address}))

    # ── .aph files ────────────────────────────────────────────────

    def to_aph(self) -> str:
        """Serialize raw contents; computed values are never written."""
        return json.dumps(self._cells, indent=2, ensure_ascii=False)

    @classmethod
    def from_aph(cls, text: str, max_rows: Optional[int] = None,
                 max_cols: Optional[int] = None) -> "SheetStore":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("An .aph file must contain a JSON object")
        for address, raw in data.items():
            if not isinstance(raw, str):
                raise ValueError(f"Cell {address} must hold text, got {type(raw).__name__}")
        return cls(cells=data, max_rows=max_rows, max_cols=max_cols)


class DatabaseManager:
    def __init__(self, db_path: str):
        self.db_path = db_path

    def get_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize_schema(self):
        with self.get_connection() as conn:
            conn.execute("""CREATE TABLE IF NOT EXISTS sheets (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL DEFAULT 'Untitled Sheet',
                max_rows INTEGER NOT NULL,
                max_cols INTEGER NOT NULL,
                cells_json TEXT NOT NULL DEFAULT '{}',
                formats_json TEXT NOT NULL DEFAULT '{}',
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )""")
            conn.commit()


class SheetRepository:
    def __init__(self, db: DatabaseManager):
        self.db = db

    def _row_to_store(self, row) -> SheetStore:
        return SheetStore(
            cells=json.loads(row["cells_json"]),
            formats=json.loads(row["formats_json"]),
            max_rows=row["max_rows"],
            max_cols=row["max_cols"],
        )

    def _row_to_sheet(self, row) -> Sheet:
        d = dict(row)
        d.pop("cells_json")
        d.pop("formats_json")
        store = self._row_to_store(row)
        return Sheet(**d, cells=store.cells, formats=store.formats, values=store.values())

    def create(self, title: str = "Untitled Sheet", cells: Dict[str, str] = None,
               formats: Dict[str, FormatTag] = None) -> Sheet:
        store = SheetStore(cells=cells, formats=formats)
        sheet_id = str(uuid.uuid4())
        with self.db.get_connection() as conn:
            conn.execute(
                "INSERT INTO sheets (id, title, max_rows, max_cols, cells_json, formats_json) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (sheet_id, title, store.max_rows, store.max_cols,
                 json.dumps(store.cells), json.dumps({a: t.value for a, t in store.formats.items()})),
            )
            conn.commit()
        logger.info("Created sheet %s (%d cells)", sheet_id, len(store))
        return self.get_by_id(sheet_id)

    def get_by_id(self, sheet_id: str) -> Optional[Sheet]:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT * FROM sheets WHERE id = ?", (sheet_id,)).fetchone()
            return self._row_to_sheet(row) if row else None

    def get_store(self, sheet_id: str) -> Optional[SheetStore]:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT * FROM sheets WHERE id = ?", (sheet_id,)).fetchone()
            return self._row_to_store(row) if row else None

    def get_all(self) -> List[Sheet]:
        with self.db.get_connection() as conn:
            rows = conn.execute("SELECT * FROM sheets ORDER BY updated_at DESC").fetchall()
            return [self._row_to_sheet(r) for r in rows]

    def _save(self, conn, sheet_id: str, store: SheetStore):
        """Persist raw contents and format tags."""
        conn.execute(
            "UPDATE sheets SET cells_json = ?, formats_json = ?, "
            "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (json.dumps(store.cells), json.dumps({a: t.value for a, t in store.formats.items()}),
             sheet_id),
        )
        conn.commit()

    def update_cell(self, sheet_id: str, address: str, value: str) -> Optional[Sheet]:
        with self.db.get_connection() as conn:
            store = self.get_store(sheet_id)
            if store is None:
                return None
            store.set_raw(address, value)
            self._save(conn, sheet_id, store)
            return self.get_by_id(sheet_id)

    def update_format(self, sheet_id: str, address: str,
                      tag: Optional[FormatTag]) -> Optional[Sheet]:
        with self.db.get_connection() as conn:
            store = self.get_store(sheet_id)
            if store is None:
                return None
            store.set_format(address, tag)
            self._save(conn, sheet_id, store)
            return self.get_by_id(sheet_id)

    def replace_cells(self, sheet_id: str, cells: Dict[str, str]) -> Optional[Sheet]:
        """Wholesale replace raw contents; format tags are kept."""
        with self.db.get_connection() as conn:
            store = self.get_store(sheet_id)
            if store is None:
                return None
            replacement = SheetStore(cells=cells, formats=store.formats,
                                     max_rows=store.max_rows, max_cols=store.max_cols)
            self._save(conn, sheet_id, replacement)
            return self.get_by_id(sheet_id)

    def update_title(self, sheet_id: str, title: str) -> Optional[Sheet]:
        with self.db.get_connection() as conn:
            conn.execute("UPDATE sheets SET title = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?", (title, sheet_id))
            conn.commit()
            return self.get_by_id(sheet_id)

    def delete(self, sheet_id: str) -> bool:
        with self.db.get_connection() as conn:
            conn.execute("DELETE FROM sheets WHERE id = ?", (sheet_id,))
            conn.commit()
            return True
