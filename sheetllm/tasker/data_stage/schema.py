"""
Data Stage Schema - Column list and column metadata for the sheet.

Column names and their display metadata live in a single ordered sequence of
``(name, ColumnMeta)`` entries, so the header list and the width/type maps the
UI reads can never fall out of step.

License: MIT
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..genai_tasker import OperationType, OperationRequest, InferenceRequest, EvaluateRequest, logger

DEFAULT_COLUMN_WIDTH = 150

IS_AUGMENTED_COLUMN = "is_augmented"
IS_AUGMENTED_WIDTH = 100
ASSISTANT_WIDTH = 200
RATIONALE_WIDTH = 300
SCORE_WIDTH = 100


class ColumnType(Enum):
    TEXT = "text"
    DROPDOWN = "dropdown"


@dataclass(frozen=True)
class ColumnMeta:
    """
    Display metadata of one column.

    Attributes:
        width: Column width in pixels.
        type: TEXT or DROPDOWN.
        score_range: Highest selectable score (DROPDOWN only).
    """
    width: int = DEFAULT_COLUMN_WIDTH
    type: ColumnType = ColumnType.TEXT
    score_range: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type.value}
        if self.type == ColumnType.DROPDOWN and self.score_range is not None:
            data["scoreRange"] = self.score_range
        return data

    @classmethod
    def text(cls, width: int = DEFAULT_COLUMN_WIDTH) -> "ColumnMeta":
        return cls(width=width)

    @classmethod
    def dropdown(cls, score_range: int, width: int = SCORE_WIDTH) -> "ColumnMeta":
        return cls(width=width, type=ColumnType.DROPDOWN, score_range=score_range)


class TableSchema:
    """
    Ordered column list with per-column metadata.

    Inserting a name that is already present is a no-op; use ``update_meta``
    to change an existing column.
    """

    def __init__(self, entries: Optional[List[Tuple[str, ColumnMeta]]] = None):
        self._entries: List[Tuple[str, ColumnMeta]] = []
        for name, meta in entries or []:
            self.append(name, meta)

    @classmethod
    def from_names(cls, names: List[str]) -> "TableSchema":
        return cls([(name, ColumnMeta.text()) for name in names])

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self._entries]

    def index(self, name: str) -> int:
        """Position of ``name``, or -1 if absent."""
        for i, (existing, _) in enumerate(self._entries):
            if existing == name:
                return i
        return -1

    def meta(self, name: str) -> ColumnMeta:
        i = self.index(name)
        if i == -1:
            raise KeyError(name)
        return self._entries[i][1]

    def _insert(self, position: int, name: str, meta: Optional[ColumnMeta]) -> bool:
        if name in self:
            return False
        self._entries.insert(position, (name, meta or ColumnMeta.text()))
        return True

    def append(self, name: str, meta: Optional[ColumnMeta] = None) -> bool:
        return self._insert(len(self._entries), name, meta)

    def prepend(self, name: str, meta: Optional[ColumnMeta] = None) -> bool:
        return self._insert(0, name, meta)

    def insert_before(self, anchor: str, name: str, meta: Optional[ColumnMeta] = None) -> bool:
        """Inserts before ``anchor``; appends when the anchor is absent."""
        i = self.index(anchor)
        return self._insert(len(self._entries) if i == -1 else i, name, meta)

    def insert_after(self, anchor: Optional[str], name: str, meta: Optional[ColumnMeta] = None) -> bool:
        """Inserts right after ``anchor``; appends when the anchor is absent."""
        i = self.index(anchor) if anchor else -1
        return self._insert(len(self._entries) if i == -1 else i + 1, name, meta)

    def ensure(self, name: str, meta: Optional[ColumnMeta] = None) -> bool:
        return self.append(name, meta)

    def update_meta(self, name: str, meta: ColumnMeta) -> None:
        i = self.index(name)
        if i == -1:
            raise KeyError(name)
        self._entries[i] = (name, meta)

    def copy(self) -> "TableSchema":
        return TableSchema(list(self._entries))

    def to_dict(self) -> Dict[str, Any]:
        """Camel-case JSON consumed by the grid: headers, columnWidths and columnTypes."""
        return {
            "headers": self.names,
            "columnWidths": {name: meta.width for name, meta in self._entries},
            "columnTypes": {name: meta.to_dict() for name, meta in self._entries},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TableSchema":
        widths = data.get("columnWidths") or {}
        types = data.get("columnTypes") or {}
        entries = []
        for name in data.get("headers") or []:
            type_info = types.get(name) or {}
            column_type = ColumnType(type_info.get("type", ColumnType.TEXT.value))
            entries.append((name, ColumnMeta(
                width=int(widths.get(name, DEFAULT_COLUMN_WIDTH)),
                type=column_type,
                score_range=type_info.get("scoreRange") if column_type == ColumnType.DROPDOWN else None,
            )))
        return cls(entries)

    def __contains__(self, name: object) -> bool:
        return any(existing == name for existing, _ in self._entries)

    def __iter__(self) -> Iterator[Tuple[str, ColumnMeta]]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, TableSchema) and self._entries == other._entries

    def __repr__(self) -> str:
        return f"TableSchema({self.names})"


class SchemaReconciler:
    """
    Adds the columns an operation produces to the schema.

    Reconciling twice with the same request leaves the schema unchanged.
    """

    def __init__(self, rationale_column: str = "LLM_Eval_rationale", score_column: str = "LLM_Eval",
                 per_model_column: bool = True):
        self.rationale_column = rationale_column
        self.score_column = score_column
        self.per_model_column = per_model_column

    def reconcile(self, schema: TableSchema, request: OperationRequest) -> TableSchema:
        """Returns an updated copy of ``schema``; the input is left untouched."""
        updated = schema.copy()
        if request.kind == OperationType.AUGMENT:
            updated.prepend(IS_AUGMENTED_COLUMN, ColumnMeta.text(IS_AUGMENTED_WIDTH))
        elif request.kind == OperationType.INFERENCE:
            self._reconcile_inference(updated, request)
        elif request.kind == OperationType.EVALUATE:
            self._reconcile_evaluate(updated, request)

        added = [name for name in updated.names if name not in schema]
        if added:
            logger.debug(f"Schema: added columns {added}")
        return updated

    def _reconcile_inference(self, schema: TableSchema, request: InferenceRequest) -> None:
        output = request.resolve_output_column(self.per_model_column)
        schema.insert_after(request.user_input_column, output, ColumnMeta.text(ASSISTANT_WIDTH))

    def _reconcile_evaluate(self, schema: TableSchema, request: EvaluateRequest) -> None:
        schema.insert_before(self.score_column, self.rationale_column, ColumnMeta.text(RATIONALE_WIDTH))
        dropdown = ColumnMeta.dropdown(request.settings.score_range, SCORE_WIDTH)
        if not schema.append(self.score_column, dropdown):
            current = schema.meta(self.score_column)
            if current.type == ColumnType.DROPDOWN and current.score_range != request.settings.score_range:
                schema.update_meta(self.score_column, replace(current, score_range=request.settings.score_range))
