"""
fixed_width.py — declarative fixed-width records for DSSAT text files.

One RecordSchema describes a line layout (name, column span, type, precision,
alignment). The same table drives encoding, decoding and the "@" column
header, so the writer and the reader always agree on column positions.

    schema = RecordSchema.from_widths([
        FieldSpec(name="DATE", width=7, kind="str"),
        FieldSpec(name="SRAD", width=6, precision=1),
    ])
    schema.encode({"DATE": "20136", "SRAD": 18.25})   # "  20136  18.2"
"""
from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from errors import FieldFormatError

MISSING = -99          # DSSAT missing-value sentinel


class FieldSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    kind: str = Field(default="float", pattern="^(str|int|float)$")
    precision: int = Field(default=1, ge=0)
    align: str = Field(default="right", pattern="^(left|right)$")
    width: Optional[int] = Field(default=None, gt=0)
    start: Optional[int] = Field(default=None, ge=0)
    end: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_span(self) -> "FieldSpec":
        if self.width is None and (self.start is None or self.end is None):
            raise ValueError(f"field {self.name!r} needs a width or a start/end span")
        if self.start is not None and self.end is not None and self.end <= self.start:
            raise ValueError(f"field {self.name!r}: end must be greater than start")
        return self

    @property
    def size(self) -> int:
        if self.start is not None and self.end is not None:
            return self.end - self.start
        return self.width  # type: ignore[return-value]


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    try:
        return math.isnan(value)
    except TypeError:
        return False


class RecordSchema:
    """Ordered fixed-width field layout."""

    def __init__(self, fields: Iterable[FieldSpec]):
        self.fields: List[FieldSpec] = list(fields)
        if not self.fields:
            raise ValueError("a record schema needs at least one field")
        for f in self.fields:
            if f.start is None or f.end is None:
                raise ValueError(f"field {f.name!r} has no column span; use RecordSchema.from_widths")
        for prev, cur in zip(self.fields, self.fields[1:]):
            if cur.start < prev.end:  # type: ignore[operator]
                raise ValueError(f"fields {prev.name!r} and {cur.name!r} overlap")

    @classmethod
    def from_widths(cls, fields: Iterable[FieldSpec], lead: int = 0) -> "RecordSchema":
        """Lay fields out back to back, starting at column `lead`."""
        placed: List[FieldSpec] = []
        pos = lead
        for f in fields:
            placed.append(f.model_copy(update={"start": pos, "end": pos + f.size}))
            pos += f.size
        return cls(placed)

    @property
    def names(self) -> List[str]:
        return [f.name for f in self.fields]

    @property
    def line_width(self) -> int:
        return self.fields[-1].end  # type: ignore[return-value]

    # ── encoding ─────────────────────────────────────────────────────────
    @staticmethod
    def render(spec: FieldSpec, value: Any) -> str:
        """Render one value into exactly `spec.size` characters."""
        if _is_missing(value):
            value = float(MISSING) if spec.kind == "float" else MISSING
        if spec.kind == "float":
            text = f"{float(value):.{spec.precision}f}"
        elif spec.kind == "int":
            text = f"{int(round(float(value)))}"
        else:
            text = str(value)

        if len(text) > spec.size:
            raise FieldFormatError(
                f"value {value!r} does not fit field {spec.name} "
                f"(width {spec.size}, rendered {text!r})"
            )
        return text.ljust(spec.size) if spec.align == "left" else text.rjust(spec.size)

    def encode(self, values: Mapping[str, Any]) -> str:
        out: List[str] = []
        pos = 0
        for f in self.fields:
            out.append(" " * (f.start - pos))  # type: ignore[operator]
            out.append(self.render(f, values.get(f.name)))
            pos = f.end  # type: ignore[assignment]
        return "".join(out)

    # ── decoding ─────────────────────────────────────────────────────────
    @staticmethod
    def parse(spec: FieldSpec, raw: str) -> Any:
        text = raw.strip()
        if not text:
            return None
        if spec.kind == "float":
            return float(text)
        if spec.kind == "int":
            return int(float(text))
        return text

    def decode(self, line: str) -> Dict[str, Any]:
        row: Dict[str, Any] = {}
        for f in self.fields:
            raw = line[f.start:f.end]
            try:
                row[f.name] = self.parse(f, raw)
            except ValueError as e:
                raise FieldFormatError(
                    f"column {f.name} [{f.start}:{f.end}] holds {raw!r}: {e}"
                ) from e
        return row

    def header(self, prefix: str = "@") -> str:
        """DSSAT "@" header: names aligned like the values underneath."""
        out: List[str] = []
        pos = 0
        for i, f in enumerate(self.fields):
            pad = " " * (f.start - pos)  # type: ignore[operator]
            width = f.size - (len(prefix) if i == 0 else 0)
            name = f.name.ljust(width) if f.align == "left" else f.name.rjust(width)
            out.append(pad + (prefix if i == 0 else "") + name)
            pos = f.end  # type: ignore[assignment]
        return "".join(out).rstrip()
