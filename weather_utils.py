"""
weather_utils.py — daily station observations → DSSAT WTH files

Usage:
    from weather_utils import load_observations, create_weather_files

    obs = load_observations("observations.csv")
    result = create_weather_files(obs, out_dir="C:/DSSAT48/Weather", season="2020")
    # result["wth_files"] → {"IA001": ".../IA010101.WTH", ...}
    # result["failed"]    → {"XX003": "no state mapping for station XX003"}

Input columns (CSV):
    date, station_id, x (longitude), y (latitude), tmin, tmax, prcp, srad
"""

from __future__ import annotations

import datetime as dt
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd

from errors import LookupMissError, PipelineError
from fixed_width import FieldSpec, RecordSchema

log = logging.getLogger(__name__)

# ── Defaults ─────────────────────────────────────────────────────────────────
ELEVATION = 150             # m, one fixed elevation for every station
REFHT = 2.0                 # temperature reference height (m)
WNDHT = 2.0                 # wind reference height (m)
WTH_SUFFIX = "01"

STATE_PREFIXES = {
    "IA": "Iowa",
    "IL": "Illinois",
    "IN": "Indiana",
    "KS": "Kansas",
    "MI": "Michigan",
    "MN": "Minnesota",
    "MO": "Missouri",
    "NE": "Nebraska",
    "OH": "Ohio",
    "WI": "Wisconsin",
}

_COL_MAP = {"date": "DATE", "station_id": "STATION", "x": "X", "y": "Y",
            "tmin": "TMIN", "tmax": "TMAX", "prcp": "RAIN", "srad": "SRAD"}

# DATE(7) + SRAD TMAX TMIN RAIN DEWP WIND PAR EVAP RHUM (9 × 6)
WTH_RECORD = RecordSchema.from_widths([
    FieldSpec(name="DATE", width=7, kind="str"),
    FieldSpec(name="SRAD", width=6),
    FieldSpec(name="TMAX", width=6),
    FieldSpec(name="TMIN", width=6),
    FieldSpec(name="RAIN", width=6),
    FieldSpec(name="DEWP", width=6),
    FieldSpec(name="WIND", width=6, kind="int"),
    FieldSpec(name="PAR", width=6),
    FieldSpec(name="EVAP", width=6),
    FieldSpec(name="RHUM", width=6),
])

WTH_STATION = RecordSchema.from_widths([
    FieldSpec(name="INSI", width=6, kind="str"),
    FieldSpec(name="LAT", width=9, precision=3),
    FieldSpec(name="LONG", width=9, precision=3),
    FieldSpec(name="ELEV", width=6, kind="int"),
    FieldSpec(name="TAV", width=6),
    FieldSpec(name="AMP", width=6),
    FieldSpec(name="REFHT", width=6),
    FieldSpec(name="WNDHT", width=6),
])


# ─────────────────────────────────────────────────────────────────────────────
# Station identifiers
# ─────────────────────────────────────────────────────────────────────────────

def station_state(station_id: str) -> Optional[str]:
    """Full state name for the two-letter identifier prefix, or None."""
    return STATE_PREFIXES.get(str(station_id)[:2].upper())


def station_digits(station_id: str) -> str:
    digits = str(station_id)[-2:]
    if len(digits) != 2 or not digits.isdigit():
        raise LookupMissError(f"station {station_id}: identifier must end in two digits")
    return digits


def station_code(station_id: str) -> str:
    """4-char INSI code, e.g. IA001 → IA01."""
    return f"{str(station_id)[:2].upper()}{station_digits(station_id)}"


def weather_code(station_id: str, season: str) -> str:
    """8-char code naming the site and its .SBX file, e.g. IA001 → IA012020."""
    return f"{str(station_id)[:2].upper()}{station_digits(station_id)}{season}"


def wth_stem(station_id: str) -> str:
    """WTH file stem: <station code><two digits><01>, e.g. IA001 → IA010101."""
    return f"{station_code(station_id)}{station_digits(station_id)}{WTH_SUFFIX}"


def to_yyddd(d: Union[pd.Timestamp, dt.date]) -> str:
    """DSSAT day-of-year date: two-digit year + three-digit day, e.g. 20136."""
    return f"{d.year % 100:02d}{d.timetuple().tm_yday:03d}"


# ─────────────────────────────────────────────────────────────────────────────
# Tables
# ─────────────────────────────────────────────────────────────────────────────

def load_observations(path: Union[str, Path]) -> pd.DataFrame:
    """Read the observation CSV into a cleaned DataFrame.

    Rows whose date cannot be parsed are rejected (logged, not kept).
    Missing numeric values stay NaN and render as -99.0 later.
    """
    df = pd.read_csv(path, dtype={"station_id": str})
    return clean_observations(df)


def clean_observations(df: pd.DataFrame) -> pd.DataFrame:
    missing = [c for c in _COL_MAP if c not in df.columns]
    if missing:
        raise ValueError(f"observation table lacks columns: {missing}")

    df = df[list(_COL_MAP)].rename(columns=_COL_MAP)
    df["STATION"] = df["STATION"].astype(str).str.strip()
    for col in ["X", "Y", "TMIN", "TMAX", "RAIN", "SRAD"]:
        df[col] = pd.to_numeric(df[col], errors="coerce")

    df["DATE"] = pd.to_datetime(df["DATE"], errors="coerce")
    bad = df["DATE"].isna()
    if bad.any():
        log.warning("rejected %d observation row(s) with unparseable dates", int(bad.sum()))
        df = df[~bad]

    df = df.sort_values(["STATION", "DATE"], kind="stable")
    df.reset_index(drop=True, inplace=True)
    return df


def build_station_info(obs: pd.DataFrame, season: str) -> pd.DataFrame:
    """One row per station: mean coordinates and the derived codes.

    Stations whose prefix has no state mapping keep state=None; they are
    rejected by write_wth before any file is generated.
    """
    info = (obs.groupby("STATION", sort=True)[["Y", "X"]].mean().round(3)
            .rename(columns={"Y": "lat", "X": "lon"}).reset_index()
            .rename(columns={"STATION": "station_id"}))
    info["state"] = info["station_id"].map(station_state)
    info["state_abbrev"] = info["station_id"].str[:2].str.upper()

    def _codes(sid: str) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        try:
            return station_code(sid), weather_code(sid, season), wth_stem(sid)
        except LookupMissError:
            return None, None, None

    codes = [_codes(sid) for sid in info["station_id"]]
    info["station_code"] = [c[0] for c in codes]
    info["weather_code"] = [c[1] for c in codes]
    info["wth_stem"] = [c[2] for c in codes]
    for sid in info.loc[info["state"].isna(), "station_id"]:
        log.warning("station %s has no state mapping; it will be rejected", sid)
    return info


def build_temp_info(obs: pd.DataFrame) -> pd.DataFrame:
    """TAV (mean of daily (TMIN+TMAX)/2) and AMP (max TMAX - min TMIN) per station."""
    mid = (obs["TMIN"] + obs["TMAX"]) / 2
    grouped = obs.assign(TMID=mid).groupby("STATION", sort=True)
    temp = pd.DataFrame({
        "tav": grouped["TMID"].mean(),
        "amp": grouped["TMAX"].max() - grouped["TMIN"].min(),
    })
    return temp.reset_index().rename(columns={"STATION": "station_id"})


def format_record(row: Any) -> str:
    """Render one observation row as a fixed-width WTH data line."""
    return WTH_RECORD.encode({
        "DATE": to_yyddd(row["DATE"]),
        "SRAD": row["SRAD"],
        "TMAX": row["TMAX"],
        "TMIN": row["TMIN"],
        "RAIN": row["RAIN"],
        # DEWP, WIND, PAR, EVAP, RHUM are not observed → missing sentinel
    })


def format_weather_records(obs: pd.DataFrame) -> Dict[str, List[str]]:
    """Formatted daily lines per station, in chronological order."""
    records: Dict[str, List[str]] = {}
    for sid, group in obs.groupby("STATION", sort=True):
        records[str(sid)] = [format_record(row) for _, row in group.sort_values("DATE").iterrows()]
    return records


# ─────────────────────────────────────────────────────────────────────────────
# WTH files
# ─────────────────────────────────────────────────────────────────────────────

def write_wth(station: Dict[str, Any], temp: Dict[str, Any], records: List[str],
              out_dir: Path) -> Path:
    """Write one station's WTH file.

    File name: {station_code}{two digits}01.WTH  (e.g. IA010101.WTH)
    Layout: station header, blank, "@ INSI" header, metadata line,
            "@  DATE" header, then one line per day.
    """
    sid = station["station_id"]
    if not isinstance(station.get("state"), str):
        raise LookupMissError(f"station {sid}: no state mapping for prefix {str(sid)[:2]!r}")
    if not isinstance(station.get("station_code"), str):
        raise LookupMissError(f"station {sid}: identifier must end in two digits")
    if not records:
        raise LookupMissError(f"station {sid}: no formatted weather records")

    code = station["station_code"]
    lines = [
        f"*WEATHER DATA : {code}",
        "",
        WTH_STATION.header(),
        WTH_STATION.encode({
            "INSI": code,
            "LAT": station["lat"],
            "LONG": station["lon"],
            "ELEV": ELEVATION,
            "TAV": temp["tav"],
            "AMP": temp["amp"],
            "REFHT": REFHT,
            "WNDHT": WNDHT,
        }),
        WTH_RECORD.header(),
        *records,
    ]

    out_dir.mkdir(parents=True, exist_ok=True)
    fpath = out_dir / f"{station['wth_stem']}.WTH"
    fpath.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return fpath


def parse_wth_header(wth_path: Path) -> Dict[str, Any]:
    """Read the station line and the data range back from a WTH file.

    Returns dict: {insi, lat, lon, elev, tav, amp, refht, wndht,
                   n_days, data_start, data_end}
    """
    lines = wth_path.read_text(encoding="utf-8").splitlines()
    result: Dict[str, Any] = {}
    for i, ln in enumerate(lines):
        if ln.strip().startswith("@ INSI") and i + 1 < len(lines):
            meta = WTH_STATION.decode(lines[i + 1])
            result = {k.lower(): v for k, v in meta.items()}
            result["lon"] = result.pop("long")
            break
    days = read_wth_records(wth_path)
    result["n_days"] = len(days)
    result["data_start"] = days[0]["DATE"] if days else ""
    result["data_end"] = days[-1]["DATE"] if days else ""
    return result


def read_wth_records(wth_path: Path) -> List[Dict[str, Any]]:
    """Decode the daily lines under the "@  DATE" header."""
    rows: List[Dict[str, Any]] = []
    in_data = False
    for ln in wth_path.read_text(encoding="utf-8").splitlines():
        if ln.strip().startswith("@") and "DATE" in ln:
            in_data = True
            continue
        if in_data and ln.strip():
            rows.append(WTH_RECORD.decode(ln))
    return rows


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────

def create_weather_files(obs: pd.DataFrame, out_dir: Union[str, Path],
                         season: str) -> Dict[str, Any]:
    """Write one WTH file per station found in the observation table.

    Failures are per station: a station without a state mapping or without
    any formatted record is reported in "failed" and the loop continues.

    Returns:
        {
            "ok": bool,                       # True if no station failed
            "wth_files": Dict[str, str],      # station_id → file path
            "failed": Dict[str, str],         # station_id → reason
            "stations": pd.DataFrame,         # StationInfo table
        }
    """
    out_path = Path(out_dir)
    stations = build_station_info(obs, season)
    temps = build_temp_info(obs).set_index("station_id")

    by_station = {str(sid): group for sid, group in obs.groupby("STATION", sort=True)}

    created: Dict[str, str] = {}
    failed: Dict[str, str] = {}
    for station in stations.to_dict("records"):
        sid = station["station_id"]
        try:
            records = format_weather_records(by_station[sid]).get(sid, [])
            fpath = write_wth(station, temps.loc[sid].to_dict(), records, out_path)
        except (PipelineError, OSError) as e:
            log.error("weather file for %s not written: %s", sid, e)
            failed[sid] = str(e)
            continue
        log.info("wrote %s (%d days)", fpath.name, len(records))
        created[sid] = str(fpath)

    return {
        "ok": not failed,
        "wth_files": created,
        "failed": failed,
        "stations": stations,
    }
