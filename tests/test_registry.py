"""Tests for JobRegistry."""

import json

import pytest

from batchrun.registry import JobNotFoundError, JobRegistry, JobValidationError
from batchrun.schemas import StepKind


HELLO_YAML = """\
name: hello_csv
description: Load movies
identity: daily
steps:
  - name: load
    type: chunk
    chunk_size: 2
    source:
      type: flat_file
      path: movies.csv
    sink:
      type: console
  - name: report
    type: tasklet
    tasklet: sample_callables:record_tasklet
"""


@pytest.fixture
def definitions_dir(tmp_path):
    defs = tmp_path / "jobs"
    defs.mkdir()
    (defs / "hello_csv.yaml").write_text(HELLO_YAML)

    nested = defs / "imports"
    nested.mkdir()
    (nested / "json_job.json").write_text(json.dumps({
        "name": "json_job",
        "steps": [{"name": "t", "type": "tasklet", "tasklet": "sample_callables:record_tasklet"}],
    }))

    deprecated = defs / "_deprecated"
    deprecated.mkdir()
    (deprecated / "old_job.yaml").write_text("name: old_job\nsteps: []\n")
    return defs


class TestJobRegistry:
    """Tests for loading job definitions."""

    def test_load_yaml(self, definitions_dir):
        registry = JobRegistry(definitions_dir)
        job_def = registry.load("hello_csv")

        assert job_def.name == "hello_csv"
        assert job_def.identity == "daily"
        assert job_def.description == "Load movies"
        assert [s.kind for s in job_def.steps] == [StepKind.CHUNK, StepKind.TASKLET]
        assert registry.path_of("hello_csv") == definitions_dir / "hello_csv.yaml"

    def test_load_json_from_subdirectory(self, definitions_dir):
        job_def = JobRegistry(definitions_dir).load("json_job")
        assert job_def.steps[0].tasklet == "sample_callables:record_tasklet"

    def test_name_defaults_to_file_name(self, definitions_dir):
        (definitions_dir / "anonymous.yaml").write_text(
            "steps:\n  - name: t\n    tasklet: sample_callables:record_tasklet\n"
        )
        assert JobRegistry(definitions_dir).load("anonymous").name == "anonymous"

    def test_list_jobs_excludes_deprecated(self, definitions_dir):
        assert JobRegistry(definitions_dir).list_jobs() == ["hello_csv", "json_job"]

    def test_list_jobs_missing_dir(self, tmp_path):
        assert JobRegistry(tmp_path / "nope").list_jobs() == []

    def test_not_found(self, definitions_dir):
        with pytest.raises(JobNotFoundError, match="missing"):
            JobRegistry(definitions_dir).load("missing")

    def test_deprecated_not_loadable(self, definitions_dir):
        with pytest.raises(JobNotFoundError):
            JobRegistry(definitions_dir).load("old_job")

    def test_name_mismatch(self, definitions_dir):
        (definitions_dir / "renamed.yaml").write_text(HELLO_YAML)
        with pytest.raises(JobValidationError, match="mismatch"):
            JobRegistry(definitions_dir).load("renamed")

    def test_invalid_definition(self, definitions_dir):
        (definitions_dir / "broken.yaml").write_text("name: broken\nsteps: []\n")
        with pytest.raises(JobValidationError, match="no steps"):
            JobRegistry(definitions_dir).load("broken")

    def test_unparsable_file(self, definitions_dir):
        (definitions_dir / "garbled.json").write_text("{not json")
        with pytest.raises(JobValidationError, match="Failed to load"):
            JobRegistry(definitions_dir).load("garbled")

    def test_cached(self, definitions_dir):
        registry = JobRegistry(definitions_dir)
        first = registry.load("hello_csv")
        (definitions_dir / "hello_csv.yaml").write_text("garbage: [")
        assert registry.load("hello_csv") is first
        registry.clear_cache()
        with pytest.raises(JobValidationError):
            registry.load("hello_csv")

    def test_compute_hash_is_stable(self, definitions_dir):
        registry = JobRegistry(definitions_dir)
        job_def = registry.load("hello_csv")
        assert JobRegistry.compute_hash(job_def) == JobRegistry.compute_hash(job_def)
        assert len(JobRegistry.compute_hash(job_def)) == 64
        assert JobRegistry.compute_hash(job_def) != JobRegistry.compute_hash(registry.load("json_job"))

    def test_preload_all(self, definitions_dir):
        assert JobRegistry(definitions_dir).preload_all() == 2
