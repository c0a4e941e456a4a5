from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

class FormatTag(str, Enum):
    GENERAL = "General"
    CURRENCY = "Currency"
    PERCENTAGE = "Percentage"
    THOUSANDS = "Thousands"

class ResultKind(str, Enum):
    VALUE = "value"
    CIRCULAR = "circular"
    MATH_ERROR = "math_error"
    INVALID_FORMULA = "invalid_formula"

# Display strings for the error kinds; '#' is reserved for them.
SENTINELS = {
    ResultKind.CIRCULAR: "#CIRCULAR",
    ResultKind.MATH_ERROR: "#ERROR",
    ResultKind.INVALID_FORMULA: "#FÓRMULA_INVÁLIDA",
}

class CellResult(BaseModel):
    """Tagged outcome of evaluating one cell.

    `display` is what the grid shows. `number` is the unformatted numeric
    value when the cell has one; formulas that reference the cell read it.
    """
    kind: ResultKind = ResultKind.VALUE
    display: str = ""
    number: Optional[float] = None

    @classmethod
    def value(cls, display: str, number: Optional[float] = None) -> "CellResult":
        return cls(kind=ResultKind.VALUE, display=display, number=number)

    @classmethod
    def error(cls, kind: ResultKind) -> "CellResult":
        return cls(kind=kind, display=SENTINELS[kind])

    @property
    def is_error(self) -> bool:
        return self.kind != ResultKind.VALUE

class Sheet(BaseModel):
    id: Optional[str] = Field(default=None)
    title: str = "Untitled Sheet"
    max_rows: int = 0
    max_cols: int = 0
    cells: Dict[str, str] = Field(default_factory=dict)
    formats: Dict[str, FormatTag] = Field(default_factory=dict)
    values: Dict[str, CellResult] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

class SheetCreate(BaseModel):
    title: str = "Untitled Sheet"
    cells: Dict[str, str] = Field(default_factory=dict)
    formats: Dict[str, FormatTag] = Field(default_factory=dict)

class SheetUpdateCell(BaseModel):
    address: str
    value: str

class SheetUpdateFormat(BaseModel):
    address: str
    format: Optional[FormatTag] = None

class SheetUpdateTitle(BaseModel):
    title: str

class CellDetail(BaseModel):
    address: str
    raw: str = ""
    format: Optional[FormatTag] = None
    result: CellResult
    dependents: List[str] = Field(default_factory=list)

class EvaluateRequest(BaseModel):
    cells: Dict[str, str] = Field(default_factory=dict)
    formats: Dict[str, FormatTag] = Field(default_factory=dict)
    addresses: List[str] = Field(default_factory=list)  # empty: every non-empty cell
