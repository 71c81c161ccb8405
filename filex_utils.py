"""
filex_utils.py — per-site FileX (.SBX) experiments from one generic template

The template is read once and never modified: populate_experiment() returns a
new ExperimentTemplate for each site, so a site that fails halfway through
cannot leak its values into the next one.

Usage:
    template = ExperimentTemplate.load("templates/SOYBEAN.SBX")
    result = create_experiment_files(sites, stations, template,
                                     out_dir="D:/dssat_work", sowing_day_month="15-05")
    # result["sbx_files"] → {"IA012020": ".../IA012020.SBX", ...}
"""
from __future__ import annotations

import datetime as dt
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple, Union

import pandas as pd
from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict

from errors import FieldFormatError, LookupMissError, PipelineError
from weather_utils import to_yyddd

log = logging.getLogger(__name__)

# -----------------------------
# SITE CONSTANTS
# -----------------------------
MATURITY_GROUPS = ("000", "00", "0", "1", "2", "3", "4", "5", "6", "7", "8", "9", "10")
MATURITY_GROUP_GENOTYPES = {mg: 990001 + i for i, mg in enumerate(MATURITY_GROUPS)}
GENOTYPE_MATURITY_GROUPS = {v: k for k, v in MATURITY_GROUP_GENOTYPES.items()}
_MG_PATTERN = re.compile(r"MG\s*[-_]?\s*(\d{1,3})", re.IGNORECASE)

# Only the first entry is assigned to sites for now.
SOIL_TYPES = ("IBSB910015", "IBSB910017", "IBSB910026")

# Initial soil nitrate (kg N/ha) for the nine template layers, top to bottom.
NITRATE_PROFILE = (10.0, 8.0, 6.0, 5.0, 4.0, 3.0, 2.0, 1.5, 1.0)

UNSET = "-99"
# Dates the template carries but no site input defines: reset, never inherited.
CLEARED_DATE_FIELDS = (
    ("INITIAL CONDITIONS", "ICDAT"),
    ("IRRIGATION AND WATER MANAGEMENT", "IDATE"),
    ("SIMULATION CONTROLS", "PFRST"),
    ("SIMULATION CONTROLS", "PLAST"),
    ("SIMULATION CONTROLS", "HFRST"),
    ("SIMULATION CONTROLS", "HLAST"),
)

# Name-like columns written from the left edge of their header token.
LEFT_ALIGNED = {"INGENO", "CNAME", "ID_FIELD", "WSTA", "ID_SOIL", "SLTX", "FLNAME",
                "ICNAME", "PLNAME", "IRNAME", "SNAME", "SMODEL"}


# -----------------------------
# TEMPLATE
# -----------------------------
class Column(NamedTuple):
    name: str
    start: int
    end: Optional[int]     # None: runs to the end of the line
    align: str


class Table(NamedTuple):
    section: str
    header_index: int
    columns: List[Column]
    rows: List[int]


def _section_name(line: str) -> str:
    return re.split(r"\s{2,}|:", line[1:], maxsplit=1)[0].strip()


def header_columns(header: str) -> List[Column]:
    """Column spans of a FileX "@" header line.

    Numeric values are right-aligned and end where their header token ends;
    dotted tokens (TNAME....) and name columns start where the token starts.
    """
    tokens = list(re.finditer(r"\S+", header))
    cols: List[Column] = []
    for i, m in enumerate(tokens):
        raw = m.group()
        name = raw.lstrip("@").strip(".")
        if not name:
            continue
        if raw.endswith(".") or name in LEFT_ALIGNED:
            end = tokens[i + 1].start() - 1 if i + 1 < len(tokens) else None
            cols.append(Column(name, m.start(), end, "left"))
        else:
            start = tokens[i - 1].end() if i > 0 else 0
            cols.append(Column(name, start, m.end(), "right"))
    return cols


def _put(line: str, col: Column, value: str) -> str:
    if col.end is None:
        return line[:col.start].ljust(col.start) + value
    width = col.end - col.start
    if len(value) > width:
        raise FieldFormatError(f"{col.name}: {value!r} does not fit width {width}")
    cell = value.ljust(width) if col.align == "left" else value.rjust(width)
    padded = line.ljust(col.end)
    return padded[:col.start] + cell + padded[col.end:]


class ExperimentTemplate(BaseModel):
    """Immutable FileX text addressed by (section, column)."""
    model_config = ConfigDict(frozen=True)

    lines: Tuple[str, ...]
    newline: str = "\n"
    trailing_newline: bool = True

    @classmethod
    def from_text(cls, text: str) -> "ExperimentTemplate":
        newline = "\r\n" if "\r\n" in text else "\n"
        trailing = text.endswith(newline)
        body = text[:-len(newline)] if trailing else text
        return cls(lines=tuple(body.split(newline)), newline=newline, trailing_newline=trailing)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ExperimentTemplate":
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"FileX template not found: {p}")
        with p.open("r", encoding="utf-8", newline="") as f:
            return cls.from_text(f.read())

    def render(self) -> str:
        text = self.newline.join(self.lines)
        return text + self.newline if self.trailing_newline else text

    def tables(self) -> List[Table]:
        tables: List[Table] = []
        section = ""
        current: Optional[Table] = None
        for i, ln in enumerate(self.lines):
            if ln.startswith("*"):
                section = _section_name(ln)
                current = None
            elif ln.startswith("@"):
                current = Table(section, i, header_columns(ln), [])
                tables.append(current)
            elif not ln.strip():
                current = None
            elif ln.lstrip().startswith("!"):
                continue
            elif current is not None:
                current.rows.append(i)
        return tables

    @property
    def sections(self) -> List[str]:
        return [_section_name(ln) for ln in self.lines if ln.startswith("*")]

    def locate(self, section: str, name: str) -> Tuple[Column, List[int]]:
        for table in self.tables():
            if table.section != section:
                continue
            for col in table.columns:
                if col.name == name:
                    return col, table.rows
        raise LookupMissError(f"template has no column {name} in section *{section}")

    def has_column(self, section: str, name: str) -> bool:
        try:
            self.locate(section, name)
        except LookupMissError:
            return False
        return True

    def values(self, section: str, name: str) -> List[str]:
        col, rows = self.locate(section, name)
        return [self.lines[r][col.start:col.end].strip() for r in rows]

    def get(self, section: str, name: str, row: int = 0) -> str:
        return self.values(section, name)[row]

    def with_values(self, section: str, name: str,
                    values: Union[str, Sequence[str]]) -> "ExperimentTemplate":
        """Copy of the template with one column overwritten.

        A single string is written to every row of the column; a sequence
        must supply exactly one value per row.
        """
        col, rows = self.locate(section, name)
        if isinstance(values, str):
            values = [values] * len(rows)
        if len(values) != len(rows):
            raise FieldFormatError(
                f"*{section} {name}: {len(values)} value(s) for {len(rows)} template row(s)"
            )
        lines = list(self.lines)
        for r, v in zip(rows, values):
            lines[r] = _put(lines[r], col, v)
        return self.model_copy(update={"lines": tuple(lines)})


# -----------------------------
# SITE TABLES
# -----------------------------
class SiteInputs(BaseModel):
    model_config = ConfigDict(frozen=True)

    site_id: str
    pdate: str
    sdate: str
    ingeno: int
    wsta: str
    soil_id: str


def load_sites(path: Union[str, Path]) -> pd.DataFrame:
    """Site metadata CSV with columns site_id, cultivar."""
    df = pd.read_csv(path, dtype=str)
    missing = [c for c in ("site_id", "cultivar") if c not in df.columns]
    if missing:
        raise ValueError(f"site table lacks columns: {missing}")
    df["site_id"] = df["site_id"].str.strip()
    return df[["site_id", "cultivar"]]


def sowing_date(site_id: str, sowing_day_month: str) -> dt.date:
    """Fixed day-month combined with the year in characters 5-8 of the site id."""
    year = site_id[4:8]
    if len(year) != 4 or not year.isdigit():
        raise LookupMissError(f"site {site_id}: no year in characters 5-8")
    try:
        return dt.datetime.strptime(f"{sowing_day_month}-{year}", "%d-%m-%Y").date()
    except ValueError as e:
        # 29-02 outside a leap year
        raise LookupMissError(f"site {site_id}: no sowing date {sowing_day_month} in {year}: {e}") from e


def build_sowing_plans(site_ids: Sequence[str], sowing_day_month: str) -> pd.DataFrame:
    rows: List[Dict[str, Any]] = []
    for sid in site_ids:
        try:
            sow = sowing_date(sid, sowing_day_month)
        except LookupMissError as e:
            log.warning("%s", e)
            continue
        start = sow + relativedelta(month=1, day=1)
        rows.append({"site_id": sid, "sowing_date": sow,
                     "pdate": to_yyddd(sow), "sdate": to_yyddd(start)})
    return pd.DataFrame(rows, columns=["site_id", "sowing_date", "pdate", "sdate"])


def maturity_group(cultivar: str) -> Optional[str]:
    m = _MG_PATTERN.search(str(cultivar))
    return m.group(1) if m else None


def cultivar_name(ingeno: int) -> str:
    """CNAME for a generic genotype, e.g. 990006 → "MG 3 GENERIC"."""
    group = GENOTYPE_MATURITY_GROUPS.get(ingeno)
    if group is None:
        raise LookupMissError(f"genotype {ingeno:06d} is not a generic maturity-group entry")
    return f"MG {group} GENERIC"


def build_genotype_assignments(sites: pd.DataFrame) -> pd.DataFrame:
    out = sites[["site_id", "cultivar"]].copy()
    out["maturity_group"] = out["cultivar"].map(maturity_group)
    out["ingeno"] = out["maturity_group"].map(MATURITY_GROUP_GENOTYPES.get)
    for row in out[out["ingeno"].isna()].itertuples():
        log.warning("site %s: no maturity group in cultivar %r", row.site_id, row.cultivar)
    return out


def _one(table: pd.DataFrame, key: str, value: str, what: str) -> Dict[str, Any]:
    match = table[table[key] == value]
    if match.empty:
        raise LookupMissError(f"site {value}: no {what} entry")
    return match.iloc[0].to_dict()


def resolve_site(site_id: str, sowing: pd.DataFrame, genotypes: pd.DataFrame,
                 stations: pd.DataFrame, soil_id: str = SOIL_TYPES[0]) -> SiteInputs:
    """Gather every per-site input; any missing lookup fails the site."""
    plan = _one(sowing, "site_id", site_id, "sowing plan")
    geno = _one(genotypes, "site_id", site_id, "genotype")
    station = _one(stations, "weather_code", site_id, "weather station")

    if pd.isna(geno.get("ingeno")):
        raise LookupMissError(f"site {site_id}: cultivar {geno.get('cultivar')!r} has no known maturity group")
    if not isinstance(station.get("state"), str) or not isinstance(station.get("wth_stem"), str):
        raise LookupMissError(f"site {site_id}: station {station['station_id']} was rejected")

    return SiteInputs(
        site_id=site_id,
        pdate=plan["pdate"],
        sdate=plan["sdate"],
        ingeno=int(geno["ingeno"]),
        wsta=station["wth_stem"],
        soil_id=soil_id,
    )


# -----------------------------
# POPULATE & WRITE
# -----------------------------
def populate_experiment(template: ExperimentTemplate, site: SiteInputs) -> ExperimentTemplate:
    """Site-specific copy of the template; the template itself is untouched."""
    exp = template
    exp = exp.with_values("TREATMENTS", "TNAME", site.site_id)
    exp = exp.with_values("CULTIVARS", "INGENO", f"{site.ingeno:06d}")
    exp = exp.with_values("CULTIVARS", "CNAME", cultivar_name(site.ingeno))
    exp = exp.with_values("FIELDS", "WSTA", site.wsta)
    exp = exp.with_values("FIELDS", "ID_SOIL", site.soil_id)
    exp = exp.with_values("PLANTING DETAILS", "PDATE", site.pdate)
    exp = exp.with_values("SIMULATION CONTROLS", "SDATE", site.sdate)
    exp = exp.with_values("INITIAL CONDITIONS", "SNO3", [f"{v:.2f}" for v in NITRATE_PROFILE])
    for section, name in CLEARED_DATE_FIELDS:
        if exp.has_column(section, name):
            exp = exp.with_values(section, name, UNSET)
    return exp


def write_experiment(experiment: ExperimentTemplate, out_dir: Path, weather_code: str) -> Path:
    out_dir.mkdir(parents=True, exist_ok=True)
    x_path = out_dir / f"{weather_code}.SBX"
    with x_path.open("w", encoding="utf-8", newline="") as f:
        f.write(experiment.render())
    return x_path


def create_experiment_files(
    sites: pd.DataFrame,
    stations: pd.DataFrame,
    template: ExperimentTemplate,
    out_dir: Union[str, Path],
    sowing_day_month: str,
) -> Dict[str, Any]:
    """Write one .SBX per site row; failures are recorded per site.

    Returns:
        {
            "ok": bool,
            "sbx_files": Dict[str, str],   # site_id → file path, in site order
            "failed": Dict[str, str],      # site_id → reason
        }
    """
    out_path = Path(out_dir)
    sowing = build_sowing_plans(list(sites["site_id"]), sowing_day_month)
    genotypes = build_genotype_assignments(sites)

    created: Dict[str, str] = {}
    failed: Dict[str, str] = {}
    for site_id in sites["site_id"]:
        try:
            site = resolve_site(site_id, sowing, genotypes, stations)
            x_path = write_experiment(populate_experiment(template, site), out_path, site_id)
        except (PipelineError, OSError) as e:
            log.error("experiment for %s not written: %s", site_id, e)
            failed[site_id] = str(e)
            continue
        log.info("wrote %s (INGENO %06d, WSTA %s)", x_path.name, site.ingeno, site.wsta)
        created[site_id] = str(x_path)

    return {"ok": not failed, "sbx_files": created, "failed": failed}
