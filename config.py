"""
config.py — environment-driven settings for the weather / FileX / batch steps.

Environment variables (create a .env file next to this module or set them in
the shell):
    DSSAT_HOME        : Root of the DSSAT installation (e.g. C:\\DSSAT48)
    DSSAT_BIN         : Engine executable (default $DSSAT_HOME/DSCSM048.EXE)
    DSSAT_WORK        : Simulation working directory; the engine writes
                        OVERVIEW.OUT / Summary.OUT here
Optional:
    DSSAT_WEATHER     : Output directory for .WTH files (default DSSAT_WORK)
    DSSAT_EXPERIMENTS : Output directory for .SBX files (default DSSAT_WORK)
    DSSAT_TEMPLATE    : Generic FileX template (default templates/SOYBEAN.SBX)
    DSSAT_MODEL       : Model code passed to the engine (default CRGRO048)
    DSSAT_SEASON      : Literal 4-digit segment of every weather code (default 2020)
    DSSAT_SOWING      : Sowing day-month, DD-MM (default 15-05)
    DSSAT_TIMEOUT     : Seconds before a hung engine run is abandoned (default 900)
    USE_WINE          : If set to '1', runs the engine through wine
    LOG_LEVEL         : Logging level name (default INFO)
"""
from __future__ import annotations

import datetime as dt
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv  # type: ignore
from pydantic import BaseModel, Field, field_validator

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"


class Settings(BaseModel):
    dssat_bin: Path
    work_dir: Path
    weather_dir: Path
    experiment_dir: Path
    template_path: Path = TEMPLATE_DIR / "SOYBEAN.SBX"
    model_code: str = "CRGRO048"
    crop_name: str = "SOYBEAN"
    season: str = Field(default="2020", pattern=r"^\d{4}$")
    sowing_day_month: str = "15-05"
    run_timeout: float = Field(default=900.0, gt=0)
    use_wine: bool = False
    log_level: str = "INFO"

    @field_validator("sowing_day_month")
    @classmethod
    def _check_day_month(cls, v: str) -> str:
        # 2000 is a leap year, so 29-02 is accepted here
        dt.datetime.strptime(f"{v}-2000", "%d-%m-%Y")
        return v

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    def ensure_dirs(self) -> None:
        for d in (self.work_dir, self.weather_dir, self.experiment_dir):
            d.mkdir(parents=True, exist_ok=True)


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build Settings from the process environment (and .env, if present)."""
    load_dotenv(env_file)

    home = Path(os.getenv("DSSAT_HOME", ""))
    work = Path(os.getenv("DSSAT_WORK", str(Path.cwd() / "_work"))).resolve()
    values = {
        "dssat_bin": Path(os.getenv("DSSAT_BIN", str(home / "DSCSM048.EXE"))).resolve(),
        "work_dir": work,
        "weather_dir": Path(os.getenv("DSSAT_WEATHER", str(work))).resolve(),
        "experiment_dir": Path(os.getenv("DSSAT_EXPERIMENTS", str(work))).resolve(),
        "use_wine": os.getenv("USE_WINE", "0") == "1",
    }
    optional = {
        "template_path": "DSSAT_TEMPLATE",
        "model_code": "DSSAT_MODEL",
        "season": "DSSAT_SEASON",
        "sowing_day_month": "DSSAT_SOWING",
        "run_timeout": "DSSAT_TIMEOUT",
        "log_level": "LOG_LEVEL",
    }
    for field, var in optional.items():
        if os.getenv(var):
            values[field] = os.environ[var]
    return Settings(**values)
