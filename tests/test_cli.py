"""Tests for the batchrun CLI."""

import pytest
import yaml
from click.testing import CliRunner
from rich.console import Console

import sample_callables
from batchrun import __version__
from batchrun.cli import main


MOVIES_CSV = "title,year\nToy Story,1995\nFargo,1996\n"


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def workspace(tmp_path):
    """A config file plus a definitions dir holding a few jobs."""
    jobs_dir = tmp_path / "jobs"
    jobs_dir.mkdir()
    (jobs_dir / "movies.csv").write_text(MOVIES_CSV)
    (jobs_dir / "record.yaml").write_text(yaml.safe_dump({
        "name": "record",
        "steps": [{"name": "only", "type": "tasklet", "tasklet": "sample_callables:record_tasklet"}],
    }))
    (jobs_dir / "boom.yaml").write_text(yaml.safe_dump({
        "name": "boom",
        "steps": [{"name": "explode", "type": "tasklet", "tasklet": "sample_callables:failing_tasklet"}],
    }))
    (jobs_dir / "print_movies.yaml").write_text(yaml.safe_dump({
        "name": "print_movies",
        "identity": "unique",
        "steps": [{
            "name": "print",
            "type": "chunk",
            "source": {"type": "flat_file", "path": "movies.csv", "types": {"year": "int"}},
            "transform": "sample_callables:upper_title",
            "sink": {"type": "console", "prefix": "movie: "},
        }],
    }))
    (jobs_dir / "broken.yaml").write_text(yaml.safe_dump({
        "name": "broken",
        "steps": [{"name": "t", "type": "tasklet", "tasklet": "sample_callables:does_not_exist"}],
    }))

    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump({
        "repository_path": str(tmp_path / "batchrun.db"),
        "definitions_dir": str(jobs_dir),
        "log_level": "WARNING",
    }))
    return config_path


def invoke(runner, workspace, *args):
    return runner.invoke(main, ["--config", str(workspace), *args])


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


# =============================================================================
# RUN
# =============================================================================


def test_run_hello(runner, workspace):
    result = invoke(runner, workspace, "run", "hello")
    assert result.exit_code == 0, result.output
    assert "Hello, batch! your run id is" in result.output
    assert "InstanceId: 1" in result.output
    assert "Status: COMPLETED" in result.output


def test_run_hello_twice_creates_new_instances(runner, workspace):
    invoke(runner, workspace, "run", "hello")
    result = invoke(runner, workspace, "run", "hello")
    assert result.exit_code == 0, result.output
    assert "InstanceId: 2" in result.output


def test_run_defined_job_with_params(runner, workspace):
    sample_callables.CALLS.clear()
    result = invoke(runner, workspace, "run", "record", "-p", "input=a.csv", "-p", "year(long)=1996")
    assert result.exit_code == 0, result.output
    assert sample_callables.CALLS == [{"input": "a.csv", "year": 1996}]


def test_run_duplicate_rejected(runner, workspace):
    first = invoke(runner, workspace, "run", "record", "-p", "input=a.csv")
    assert first.exit_code == 0, first.output

    second = invoke(runner, workspace, "run", "record", "-p", "input=a.csv")
    assert second.exit_code == 1
    assert "already completed" in second.output

    other = invoke(runner, workspace, "run", "record", "-p", "input=b.csv")
    assert other.exit_code == 0, other.output


def test_run_identity_override(runner, workspace):
    invoke(runner, workspace, "run", "record")
    result = invoke(runner, workspace, "run", "record", "--identity", "unique")
    assert result.exit_code == 0, result.output


def test_run_chunk_job(runner, workspace):
    result = invoke(runner, workspace, "run", "print_movies")
    assert result.exit_code == 0, result.output
    assert "movie: " in result.output
    assert "TOY STORY" in result.output
    assert "FARGO" in result.output


def test_run_failing_job(runner, workspace):
    result = invoke(runner, workspace, "run", "boom")
    assert result.exit_code == 1
    assert "Status: FAILED" in result.output
    assert "Step 'explode' failed" in result.output


def test_run_bad_param(runner, workspace):
    result = invoke(runner, workspace, "run", "record", "-p", "year(bogus)=1")
    assert result.exit_code == 2
    assert "Unknown parameter type" in result.output


def test_run_unknown_job(runner, workspace):
    result = invoke(runner, workspace, "run", "nope")
    assert result.exit_code == 1
    assert "Unknown job: nope" in result.output
    assert "hello" in result.output


def test_run_invalid_job(runner, workspace):
    result = invoke(runner, workspace, "run", "broken")
    assert result.exit_code == 1
    assert "Invalid job broken" in result.output


def test_bad_config_reported(runner, tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("chunk_size: -1\n")
    result = runner.invoke(main, ["--config", str(config_path), "run", "hello"])
    assert result.exit_code == 1
    assert "Config not loaded" in result.output


# =============================================================================
# JOBS
# =============================================================================


def test_jobs_list(runner, workspace):
    result = invoke(runner, workspace, "jobs", "list")
    assert result.exit_code == 0, result.output
    assert "builtin:" in result.output
    assert "  hello - " in result.output
    for name in ("boom", "broken", "print_movies", "record"):
        assert f"  {name}" in result.output


def test_jobs_list_empty_definitions(runner, tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump({"definitions_dir": str(tmp_path / "empty")}))
    result = runner.invoke(main, ["--config", str(config_path), "jobs", "list"])
    assert result.exit_code == 0
    assert "(none)" in result.output


def test_jobs_show_builtin(runner, workspace):
    result = invoke(runner, workspace, "jobs", "show", "hello")
    assert result.exit_code == 0
    assert "Job: hello (builtin)" in result.output
    assert "Identity: unique" in result.output
    assert "Steps: step1" in result.output


def test_jobs_show_defined(runner, workspace):
    result = invoke(runner, workspace, "jobs", "show", "print_movies")
    assert result.exit_code == 0, result.output
    assert "Job: print_movies" in result.output
    assert "Hash: " in result.output
    assert "flat_file" in result.output


def test_jobs_show_unknown(runner, workspace):
    result = invoke(runner, workspace, "jobs", "show", "nope")
    assert result.exit_code == 1
    assert "Unknown job" in result.output


# =============================================================================
# EXECUTIONS
# =============================================================================


def test_executions_table(runner, workspace, monkeypatch):
    monkeypatch.setattr("batchrun.utils.console", Console(width=200))
    invoke(runner, workspace, "run", "record", "-p", "input=a.csv")
    invoke(runner, workspace, "run", "boom")

    result = invoke(runner, workspace, "executions", "record")
    assert result.exit_code == 0, result.output
    assert "Executions of record" in result.output
    assert "COMPLETED" in result.output
    assert "only=COMPLETED" in result.output

    failed = invoke(runner, workspace, "executions", "boom")
    assert "FAILED" in failed.output


def test_executions_none(runner, workspace):
    result = invoke(runner, workspace, "executions", "record")
    assert result.exit_code == 0
    assert "No executions recorded for record" in result.output


# =============================================================================
# INIT
# =============================================================================


def test_init_writes_config(runner, isolated_home):
    result = runner.invoke(main, ["init"])
    assert result.exit_code == 0, result.output

    config_path = isolated_home / "config.yaml"
    assert config_path.exists()
    data = yaml.safe_load(config_path.read_text())
    assert data["definitions_dir"] == str(isolated_home / "jobs")
    assert (isolated_home / "jobs").is_dir()
    assert (isolated_home / ".env").exists()


def test_init_refuses_overwrite(runner, isolated_home):
    runner.invoke(main, ["init"])
    result = runner.invoke(main, ["init"])
    assert result.exit_code == 1
    assert "already exists" in result.output

    forced = runner.invoke(main, ["init", "--force"])
    assert forced.exit_code == 0
