"""
dssat_batch.py — sequential DSSAT runs over many sites and report parsing

For each site: write a single-entry DSSBatch.v48 → run DSCSM synchronously in
the working directory → read OVERVIEW.OUT (stage table) and Summary.OUT
(soil id) → append the tagged rows to a ResultAccumulator.

The engine writes its reports to fixed file names inside the working
directory and overwrites them on every run, so sites are processed strictly
one at a time and the reports are removed before each invocation.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field

from config import Settings
from errors import EngineRunError, FieldFormatError, PipelineError, ReportParseError
from fixed_width import FieldSpec, RecordSchema

log = logging.getLogger(__name__)

BATCH_FILE = "DSSBatch.v48"
OVERVIEW_FILE = "OVERVIEW.OUT"
SUMMARY_FILE = "Summary.OUT"
ERROR_FILE = "ERROR.OUT"
RUN_MODE = "B"

FILEX_WIDTH = 94
# name, width, value of the DSSBatch flag columns after @FILEX
BATCH_FLAGS = (("TRTNO", 5, 1), ("RP", 7, 1), ("SQ", 7, 0), ("OP", 7, 1), ("CO", 7, 0))

# -----------------------------
# OVERVIEW.OUT STAGE TABLE
# -----------------------------
# The stage table starts at its "Start Sim" row. The growth-variables heading
# follows it; the two lines above that heading (blank + dashes) close the
# table, so the last data row sits END_MARKER_OFFSET lines above the heading.
START_MARKER = "Start Sim"
END_MARKER = "MAIN GROWTH AND DEVELOPMENT VARIABLES"
END_MARKER_OFFSET = 3

OVERVIEW_SCHEMA = RecordSchema([
    FieldSpec(name="date", start=0, end=7, kind="str"),
    FieldSpec(name="crop_age", start=7, end=12, kind="int"),
    FieldSpec(name="stage", start=14, end=30, kind="str", align="left"),
    FieldSpec(name="biomass", start=30, end=37, kind="int"),
    FieldSpec(name="lai", start=37, end=44, precision=2),
    FieldSpec(name="leaf_number", start=44, end=50, precision=1),
    FieldSpec(name="crop_n", start=50, end=56, kind="int"),
    FieldSpec(name="crop_n_pct", start=56, end=61, precision=1),
    FieldSpec(name="water_stress_photo", start=61, end=66, precision=2),
    FieldSpec(name="n_stress_photo", start=66, end=71, precision=2),
    FieldSpec(name="water_stress_growth", start=71, end=76, precision=2),
    FieldSpec(name="n_stress_growth", start=76, end=81, precision=2),
    FieldSpec(name="stage_code", start=81, end=86, kind="int"),
])

PHENOLOGY_COLUMNS = OVERVIEW_SCHEMA.names + ["site_id", "soil_type"]

SITE_ID_LENGTH = 8
SOIL_TAG = slice(4, 10)     # IBSB910015 → 910015


# -----------------------------
# RESULT ACCUMULATOR
# -----------------------------
def _empty_table() -> pd.DataFrame:
    return pd.DataFrame(columns=PHENOLOGY_COLUMNS)


class ResultAccumulator(BaseModel):
    """Cumulative phenology table plus the per-site outcome.

    Each step returns a new accumulator; rows keep the order in which sites
    were processed and are never deduplicated.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    table: pd.DataFrame = Field(default_factory=_empty_table)
    completed: Tuple[str, ...] = ()
    failures: Dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def with_site(self, site_id: str, frame: pd.DataFrame) -> "ResultAccumulator":
        frame = frame[PHENOLOGY_COLUMNS]
        table = frame.copy() if self.table.empty else pd.concat([self.table, frame], ignore_index=True)
        return self.model_copy(update={"table": table.reset_index(drop=True),
                                       "completed": self.completed + (site_id,)})

    def with_failure(self, site_id: str, reason: str) -> "ResultAccumulator":
        return self.model_copy(update={"failures": {**self.failures, site_id: reason}})

    def failures_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [{"site_id": k, "reason": v} for k, v in self.failures.items()],
            columns=["site_id", "reason"],
        )


# -----------------------------
# UTILITIES
# -----------------------------
def sha256_of_path(p: Path, block: int = 1 << 16) -> str:
    digest = hashlib.sha256()
    with p.open("rb") as f:
        while True:
            data = f.read(block)
            if not data:
                break
            digest.update(data)
    return digest.hexdigest()


def write_manifest(work_dir: Path, extra: Dict[str, Any]) -> Dict[str, Any]:
    manifest: Dict[str, Any] = {"files": {}, **extra}
    for path in sorted(work_dir.rglob("*")):
        if path.is_file() and path.name != "manifest.json":
            manifest["files"][str(path.relative_to(work_dir))] = sha256_of_path(path)
    (work_dir / "manifest.json").write_text(json.dumps(manifest, indent=2))
    return manifest


def find_output(work_dir: Path, name: str) -> Optional[Path]:
    """Locate an engine report; DSSAT's casing differs between platforms."""
    exact = work_dir / name
    if exact.exists():
        return exact
    for p in work_dir.glob("*"):
        if p.name.upper() == name.upper():
            return p
    return None


def site_id_from_filex(filex_path: Union[str, Path]) -> str:
    name = Path(filex_path).name
    if len(Path(filex_path).stem) < SITE_ID_LENGTH:
        raise ReportParseError(f"{name}: file name too short for an {SITE_ID_LENGTH}-char site id")
    return name[:SITE_ID_LENGTH]


# -----------------------------
# ENGINE
# -----------------------------
def write_dssbatch(filex_path: Path, work_dir: Path, crop_name: str = "") -> Path:
    """Single-entry batch file: treatment 1, replicate 1, outside any sequence."""
    title = f"$BATCH({crop_name.upper()})" if crop_name else "$BATCH"
    header = "@FILEX".ljust(FILEX_WIDTH) + "".join(n.rjust(w) for n, w, _ in BATCH_FLAGS)
    # absolute path, never truncated
    entry = str(filex_path.resolve()).ljust(FILEX_WIDTH) + "".join(
        str(v).rjust(w) for _, w, v in BATCH_FLAGS
    )
    path = work_dir / BATCH_FILE
    path.write_text(f"{title}\n{header}\n{entry}\n")
    return path


def clear_outputs(work_dir: Path) -> None:
    """Remove reports of a previous run so they can never be parsed as this site's."""
    for name in (OVERVIEW_FILE, SUMMARY_FILE, ERROR_FILE):
        found = find_output(work_dir, name)
        if found is not None:
            found.unlink()


def engine_command(settings: Settings) -> List[str]:
    """[wine] DSCSM048.EXE [CRGRO048] B DSSBatch.v48"""
    cmd = ["wine"] if settings.use_wine else []
    cmd.append(str(settings.dssat_bin))
    if settings.model_code:
        cmd.append(settings.model_code)
    return cmd + [RUN_MODE, BATCH_FILE]


def run_dssat(settings: Settings) -> subprocess.CompletedProcess:
    return subprocess.run(
        engine_command(settings), cwd=settings.work_dir, env=os.environ.copy(),
        capture_output=True, text=True, check=False, timeout=settings.run_timeout,
    )


def _error_tail(work_dir: Path, proc: subprocess.CompletedProcess, limit: int = 3000) -> str:
    err_file = find_output(work_dir, ERROR_FILE)
    if err_file is not None:
        try:
            return err_file.read_text(errors="replace")[-limit:].strip()
        except OSError as e:
            log.warning("cannot read %s: %s", err_file, e)
    return (proc.stderr or "")[-limit:].strip()


def run_site(filex_path: Path, settings: Settings) -> subprocess.CompletedProcess:
    """Run the engine for one experiment file and check it really succeeded."""
    site_id = site_id_from_filex(filex_path)
    work_dir = settings.work_dir
    try:
        write_dssbatch(filex_path, work_dir, settings.crop_name)
        clear_outputs(work_dir)
    except OSError as e:
        raise EngineRunError(f"site {site_id}: cannot prepare {work_dir}: {e}") from e

    try:
        proc = run_dssat(settings)
    except subprocess.TimeoutExpired as e:
        raise EngineRunError(
            f"site {site_id}: DSSAT did not finish within {settings.run_timeout:g} s"
        ) from e
    except OSError as e:
        raise EngineRunError(f"site {site_id}: cannot start {settings.dssat_bin}: {e}") from e

    if proc.returncode != 0:
        raise EngineRunError(
            f"site {site_id}: DSSAT exited with code {proc.returncode}: {_error_tail(work_dir, proc)}"
        )
    if find_output(work_dir, OVERVIEW_FILE) is None:
        raise EngineRunError(f"site {site_id}: DSSAT exited cleanly but wrote no {OVERVIEW_FILE}")
    return proc


# -----------------------------
# REPORT PARSING
# -----------------------------
def _read_report(path: Path) -> str:
    if not path.exists():
        raise ReportParseError(f"{path.name} missing in {path.parent}")
    try:
        return path.read_text(errors="ignore")
    except OSError as e:
        raise ReportParseError(f"{path.name}: cannot read: {e}") from e


def locate_stage_region(lines: List[str]) -> Tuple[int, int]:
    """(first, last) line indices of the stage table, both inclusive."""
    start = next((i for i, ln in enumerate(lines) if START_MARKER in ln), None)
    if start is None:
        raise ReportParseError(f"start marker {START_MARKER!r} not found")
    heading = next((i for i in range(start, len(lines)) if END_MARKER in lines[i]), None)
    if heading is None:
        raise ReportParseError(f"end marker {END_MARKER!r} not found after line {start}")
    end = heading - END_MARKER_OFFSET
    if end < start:
        raise ReportParseError(f"empty stage table between lines {start} and {heading}")
    return start, end


def parse_overview_out(path: Path) -> pd.DataFrame:
    """Parse the stage table of OVERVIEW.OUT into the 13 named columns."""
    lines = _read_report(path).splitlines()
    try:
        start, end = locate_stage_region(lines)
    except ReportParseError as e:
        raise ReportParseError(f"{path.name}: {e}") from e

    rows: List[Dict[str, Any]] = []
    for i in range(start, end + 1):
        if not lines[i].strip():
            continue
        try:
            rows.append(OVERVIEW_SCHEMA.decode(lines[i]))
        except FieldFormatError as e:
            raise ReportParseError(f"{path.name} line {i + 1}: {e}") from e
    return pd.DataFrame(rows, columns=OVERVIEW_SCHEMA.names)


def parse_summary_out(path: Path) -> List[Dict[str, str]]:
    """Parse Summary.OUT using column positions from the header line.

    Returns one dict per run row (all columns, raw string values).
    """
    lines = [ln for ln in _read_report(path).splitlines() if ln.strip()]

    header_idx = None
    for i, ln in enumerate(lines):
        if ln.strip().startswith("@") and "RUNNO" in ln.upper():
            header_idx = i
            break
    if header_idx is None:
        raise ReportParseError(f"{path.name}: RUNNO header not found")

    # A value ends where its header token ends ("SOIL_ID..." dots included)
    # and starts after the previous token.
    tokens = list(re.finditer(r"\S+", lines[header_idx]))
    columns = [(m.group().lstrip("@").rstrip("."), tokens[j - 1].end() if j else 0, m.end())
               for j, m in enumerate(tokens)]

    runs: List[Dict[str, str]] = []
    for ln in lines[header_idx + 1:]:
        stripped = ln.strip()
        if stripped.startswith("!") or stripped.startswith("@") or stripped.startswith("*"):
            continue
        runs.append({name: ln[left:right].strip() for name, left, right in columns})
    return runs


def soil_type_tag(soil_id: str) -> str:
    soil_id = soil_id.strip()
    if len(soil_id) < SOIL_TAG.stop:
        raise ReportParseError(
            f"soil id {soil_id!r} is shorter than {SOIL_TAG.stop} characters"
        )
    return soil_id[SOIL_TAG]


def collect_site_results(work_dir: Path, site_id: str) -> pd.DataFrame:
    """Stage table of the last run, tagged with site id and soil type."""
    overview = find_output(work_dir, OVERVIEW_FILE) or work_dir / OVERVIEW_FILE
    summary = find_output(work_dir, SUMMARY_FILE) or work_dir / SUMMARY_FILE
    try:
        frame = parse_overview_out(overview)
        runs = parse_summary_out(summary)
        if not runs or not runs[0].get("SOIL_ID"):
            raise ReportParseError(f"{summary.name}: no SOIL_ID value")
        soil = soil_type_tag(runs[0]["SOIL_ID"])
    except ReportParseError as e:
        raise ReportParseError(f"site {site_id}: {e}") from e

    frame["site_id"] = site_id
    frame["soil_type"] = soil
    return frame


# -----------------------------
# BATCH
# -----------------------------
def process_site(filex_path: Path, settings: Settings, acc: ResultAccumulator) -> ResultAccumulator:
    """Run and parse one site; its failure is recorded, not raised."""
    try:
        site_id = site_id_from_filex(filex_path)
    except ReportParseError as e:
        log.error("%s", e)
        return acc.with_failure(Path(filex_path).stem, str(e))

    log.info("running site %s (%s)", site_id, Path(filex_path).name)
    try:
        proc = run_site(Path(filex_path), settings)
        frame = collect_site_results(settings.work_dir, site_id)
    except (PipelineError, OSError) as e:
        log.error("site %s failed: %s", site_id, e)
        return acc.with_failure(site_id, str(e))

    log.info("site %s: %d stage rows (exit %d)", site_id, len(frame), proc.returncode)
    return acc.with_site(site_id, frame)


def run_batch(filex_paths: Iterable[Union[str, Path]], settings: Settings,
              acc: Optional[ResultAccumulator] = None) -> ResultAccumulator:
    """Process sites one after another, in the given order."""
    acc = acc or ResultAccumulator()
    work_dir = settings.work_dir
    work_dir.mkdir(parents=True, exist_ok=True)

    # engine control file, when shipped next to the binary
    ctr_src = settings.dssat_bin.parent / "DSCSM048.CTR"
    if ctr_src.exists() and ctr_src.parent.resolve() != work_dir.resolve():
        shutil.copy2(ctr_src, work_dir / ctr_src.name)

    for filex_path in filex_paths:
        acc = process_site(Path(filex_path), settings, acc)

    write_manifest(work_dir, {
        "model": settings.model_code,
        "completed": list(acc.completed),
        "failed": acc.failures,
    })
    return acc


def write_results(acc: ResultAccumulator, out_dir: Path) -> Dict[str, Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    paths = {
        "phenology": out_dir / "phenology.csv",
        "failures": out_dir / "failures.csv",
    }
    acc.table.to_csv(paths["phenology"], index=False)
    acc.failures_frame().to_csv(paths["failures"], index=False)
    return paths
