import subprocess
from pathlib import Path

import pandas as pd
import pytest

import dssat_batch
from config import TEMPLATE_DIR, Settings
from dssat_batch import END_MARKER, OVERVIEW_SCHEMA
from filex_utils import ExperimentTemplate
from weather_utils import clean_observations

ENV_VARS = ("DSSAT_HOME", "DSSAT_BIN", "DSSAT_WORK", "DSSAT_WEATHER", "DSSAT_EXPERIMENTS",
            "DSSAT_TEMPLATE", "DSSAT_MODEL", "DSSAT_SEASON", "DSSAT_SOWING", "DSSAT_TIMEOUT",
            "USE_WINE", "LOG_LEVEL")

OBSERVATIONS = [
    # date, station_id, x, y, tmin, tmax, prcp, srad  (deliberately out of order)
    ("2020-05-17", "IA001", -93.5, 41.2355, 8.0, 30.0, 0.0, 22.1),
    ("2020-05-15", "IA001", -93.5, 41.2345, 10.0, 20.0, 5.2, 18.3),
    ("2020-05-16", "IA001", -93.5, 41.2350, 12.0, 24.0, 0.0, None),
    ("2020-05-15", "IL002", -89.1, 40.1, 11.0, 23.0, 1.0, 20.0),
    ("2020-05-16", "IL002", -89.1, 40.1, 9.0, 25.0, 0.0, 21.0),
    ("2020-05-15", "XX003", -90.0, 39.0, 10.0, 20.0, 0.0, 19.0),
    ("not-a-date", "IA001", -93.5, 41.2350, 10.0, 20.0, 0.0, 19.0),
]

STAGE_ROWS = [
    {"date": "15 MAY", "crop_age": 0, "stage": "Start Sim", "biomass": 0, "lai": 0.0,
     "leaf_number": 0.0, "crop_n": 0, "crop_n_pct": 0.0, "water_stress_photo": 0.0,
     "n_stress_photo": 0.0, "water_stress_growth": 0.0, "n_stress_growth": 0.0, "stage_code": 0},
    {"date": "22 MAY", "crop_age": 7, "stage": "Emergence", "biomass": 12, "lai": 0.05,
     "leaf_number": 1.0, "crop_n": 1, "crop_n_pct": 4.5, "water_stress_photo": 0.0,
     "n_stress_photo": 0.0, "water_stress_growth": 0.0, "n_stress_growth": 0.0, "stage_code": 1},
    {"date": "20 SEP", "crop_age": 128, "stage": "Harvest Mat.", "biomass": 8123, "lai": 2.35,
     "leaf_number": 18.5, "crop_n": 210, "crop_n_pct": 2.6, "water_stress_photo": 0.12,
     "n_stress_photo": 0.03, "water_stress_growth": 0.2, "n_stress_growth": 0.05, "stage_code": 10},
]


def overview_lines(rows):
    head = [
        "*DSSAT Cropping System Model Ver. 4.8.0.000",
        "",
        "*SIMULATED CROP AND SOIL STATUS AT MAIN DEVELOPMENT STAGES",
        "",
        "   DATE  CROP  GROWTH            BIOMASS   LAI   LEAF   CROP N   STRESS",
        "",
    ]
    body = [OVERVIEW_SCHEMA.encode(r) for r in rows]
    tail = ["", "-" * 86, f"*{END_MARKER}", "", "@       VARIABLE              SIMULATED   MEASURED"]
    return head + body + tail


def summary_text(soil_id="IBSB910015"):
    cols = [("@   RUNNO", "1"), ("   TRNO", "1"), (" CR", "SB"),
            (" MODEL...", "CRGRO048"), (" SOIL_ID...", soil_id)]
    header = "".join(h for h, _ in cols)
    row = "".join(v.rjust(len(h)) for h, v in cols)
    return "\n".join(["*SUMMARY : GENERIC SOYBEAN SITE EXPERIMENT", "", header, row]) + "\n"


@pytest.fixture
def raw_observations():
    return pd.DataFrame(OBSERVATIONS, columns=["date", "station_id", "x", "y",
                                               "tmin", "tmax", "prcp", "srad"])


@pytest.fixture
def obs(raw_observations):
    return clean_observations(raw_observations)


@pytest.fixture
def template():
    return ExperimentTemplate.load(TEMPLATE_DIR / "SOYBEAN.SBX")


@pytest.fixture
def settings(tmp_path):
    s = Settings(
        dssat_bin=tmp_path / "dssat" / "DSCSM048.EXE",
        work_dir=tmp_path / "work",
        weather_dir=tmp_path / "work",
        experiment_dir=tmp_path / "work",
        run_timeout=5,
    )
    s.ensure_dirs()
    return s


@pytest.fixture
def clean_env(monkeypatch):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


@pytest.fixture
def fake_engine(monkeypatch):
    """Replace the DSSAT executable with a function writing canned reports.

    Returns install(failing=(), timeout=False, write_reports=True, overview=None) → list of
    site ids in the order the engine was invoked.
    """
    calls = []

    def install(failing=(), timeout=False, write_reports=True, overview=None):
        def fake_run(args, cwd=None, **kwargs):
            work = Path(cwd)
            row = (work / dssat_batch.BATCH_FILE).read_text().splitlines()[2]
            site = Path(row.rsplit(None, 5)[0].strip()).name[:8]
            calls.append(site)
            if timeout:
                raise subprocess.TimeoutExpired(args, kwargs.get("timeout"))
            if site in failing:
                (work / "ERROR.OUT").write_text("simulated engine error\n")
                return subprocess.CompletedProcess(args, 99, "", "boom")
            if write_reports:
                (work / "OVERVIEW.OUT").write_text(
                    overview if overview is not None else "\n".join(overview_lines(STAGE_ROWS)) + "\n"
                )
                (work / "Summary.OUT").write_text(summary_text())
            return subprocess.CompletedProcess(args, 0, "", "")

        monkeypatch.setattr(dssat_batch.subprocess, "run", fake_run)
        return calls

    return install
