#!/usr/bin/env python
"""
dssat_pipeline.py — command line entry point

    dssat-sites weather      observations.csv
    dssat-sites experiments  observations.csv sites.csv
    dssat-sites run          [IA012020.SBX ...]
    dssat-sites all          observations.csv sites.csv --out results/

Paths and engine options come from the environment / .env (see config.py).
The exit status is 1 when any station or site failed.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from config import Settings, load_settings
from dssat_batch import run_batch, write_results
from filex_utils import ExperimentTemplate, create_experiment_files, load_sites
from weather_utils import build_station_info, create_weather_files, load_observations

log = logging.getLogger("dssat_pipeline")


def _report(step: str, result: dict) -> bool:
    for key, reason in result["failed"].items():
        log.warning("%s: %s failed: %s", step, key, reason)
    return result["ok"]


def cmd_weather(settings: Settings, obs_csv: str) -> bool:
    obs = load_observations(obs_csv)
    result = create_weather_files(obs, settings.weather_dir, settings.season)
    log.info("weather: %d file(s) written to %s", len(result["wth_files"]), settings.weather_dir)
    return _report("weather", result)


def _write_experiments(settings: Settings, obs_csv: str, sites_csv: str) -> dict:
    obs = load_observations(obs_csv)
    stations = build_station_info(obs, settings.season)
    template = ExperimentTemplate.load(settings.template_path)
    result = create_experiment_files(load_sites(sites_csv), stations, template,
                                     settings.experiment_dir, settings.sowing_day_month)
    log.info("experiments: %d file(s) written to %s", len(result["sbx_files"]), settings.experiment_dir)
    return result


def cmd_experiments(settings: Settings, obs_csv: str, sites_csv: str) -> bool:
    return _report("experiments", _write_experiments(settings, obs_csv, sites_csv))


def cmd_run(settings: Settings, sbx_files: Sequence[str], out_dir: Path) -> bool:
    paths: List[Path] = [Path(p) for p in sbx_files] or sorted(settings.experiment_dir.glob("*.SBX"))
    if not paths:
        log.error("run: no .SBX files given or found in %s", settings.experiment_dir)
        return False
    acc = run_batch(paths, settings)
    written = write_results(acc, out_dir)
    log.info("run: %d site(s) completed, %d failed; results in %s",
             len(acc.completed), len(acc.failures), written["phenology"])
    return acc.ok


def cmd_all(settings: Settings, obs_csv: str, sites_csv: str, out_dir: Path) -> bool:
    ok = cmd_weather(settings, obs_csv)
    result = _write_experiments(settings, obs_csv, sites_csv)
    ok = _report("experiments", result) and ok
    if not result["sbx_files"]:
        log.error("all: no experiment file was written; nothing to run")
        return False
    # Only the experiments written in this invocation are run, in site order.
    return cmd_run(settings, list(result["sbx_files"].values()), out_dir) and ok


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dssat-sites",
                                     description="Prepare DSSAT inputs and run many sites in batch.")
    parser.add_argument("--env-file", default=None, help="Path of a .env file to load.")
    subparser = parser.add_subparsers(dest="command", required=True)

    weather = subparser.add_parser("weather", help="Write one .WTH file per station.")
    weather.add_argument("obs_csv", help="Daily observations: date, station_id, x, y, tmin, tmax, prcp, srad.")

    experiments = subparser.add_parser("experiments", help="Write one .SBX file per site.")
    experiments.add_argument("obs_csv", help="Daily observations (station coordinates and codes).")
    experiments.add_argument("sites_csv", help="Site table: site_id, cultivar.")

    run = subparser.add_parser("run", help="Run DSSAT on experiment files and collect phenology.")
    run.add_argument("sbx_files", nargs="*", help="Experiment files; default: every .SBX in DSSAT_EXPERIMENTS.")
    run.add_argument("--out", default=None, help="Directory for phenology.csv and failures.csv.")

    everything = subparser.add_parser("all", help="weather + experiments + run.")
    everything.add_argument("obs_csv")
    everything.add_argument("sites_csv")
    everything.add_argument("--out", default=None, help="Directory for phenology.csv and failures.csv.")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.env_file)
    logging.basicConfig(level=settings.log_level,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings.ensure_dirs()

    out_dir = Path(args.out) if getattr(args, "out", None) else settings.work_dir / "results"
    if args.command == "weather":
        ok = cmd_weather(settings, args.obs_csv)
    elif args.command == "experiments":
        ok = cmd_experiments(settings, args.obs_csv, args.sites_csv)
    elif args.command == "run":
        ok = cmd_run(settings, args.sbx_files, out_dir)
    else:
        ok = cmd_all(settings, args.obs_csv, args.sites_csv, out_dir)
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
