import pandas as pd
import pytest

from conftest import STAGE_ROWS
from dssat_pipeline import build_parser, main


@pytest.fixture
def inputs(tmp_path, raw_observations):
    obs_csv = tmp_path / "observations.csv"
    raw_observations[raw_observations["station_id"] != "XX003"].to_csv(obs_csv, index=False)
    sites_csv = tmp_path / "sites.csv"
    pd.DataFrame({
        "site_id": ["IL022020", "IA012020"],
        "cultivar": ["MG 2", "Pioneer MG 3"],
    }).to_csv(sites_csv, index=False)
    return obs_csv, sites_csv


@pytest.fixture
def env(clean_env, tmp_path):
    work = tmp_path / "work"
    clean_env.setenv("DSSAT_WORK", str(work))
    clean_env.setenv("DSSAT_BIN", str(tmp_path / "dssat" / "DSCSM048.EXE"))
    clean_env.setenv("DSSAT_TIMEOUT", "30")
    return work


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_weather_command(env, inputs):
    obs_csv, _ = inputs
    assert main(["weather", str(obs_csv)]) == 0
    assert sorted(p.name for p in env.glob("*.WTH")) == ["IA010101.WTH", "IL020201.WTH"]


def test_weather_command_fails_on_unmapped_station(env, raw_observations, tmp_path):
    obs_csv = tmp_path / "all_stations.csv"
    raw_observations.to_csv(obs_csv, index=False)
    assert main(["weather", str(obs_csv)]) == 1
    assert (env / "IA010101.WTH").exists()


def test_experiments_command(env, inputs):
    obs_csv, sites_csv = inputs
    assert main(["experiments", str(obs_csv), str(sites_csv)]) == 0
    assert sorted(p.name for p in env.glob("*.SBX")) == ["IA012020.SBX", "IL022020.SBX"]


def test_all_end_to_end(env, inputs, fake_engine, tmp_path):
    obs_csv, sites_csv = inputs
    calls = fake_engine()
    out = tmp_path / "results"

    assert main(["all", str(obs_csv), str(sites_csv), "--out", str(out)]) == 0

    # site table order, not file name order
    assert calls == ["IL022020", "IA012020"]
    table = pd.read_csv(out / "phenology.csv")
    assert table["site_id"].tolist() == ["IL022020"] * len(STAGE_ROWS) + ["IA012020"] * len(STAGE_ROWS)
    assert pd.read_csv(out / "failures.csv").empty


def test_run_command_exit_status_reflects_failures(env, inputs, fake_engine):
    obs_csv, sites_csv = inputs
    assert main(["experiments", str(obs_csv), str(sites_csv)]) == 0
    calls = fake_engine(failing={"IA012020"})

    assert main(["run"]) == 1
    assert calls == ["IA012020", "IL022020"]
    failures = pd.read_csv(env / "results" / "failures.csv")
    assert failures["site_id"].tolist() == ["IA012020"]
