"""
JobRegistry - Load and validate JobDefs from a definitions directory.

The registry provides:
- Loading JobDefs from YAML or JSON files in a definitions directory
- Caching loaded definitions
- Validation of JobDef structure
- Content hashes of definitions (canonical JSON, SHA256)
"""

import hashlib
import json
from pathlib import Path
from typing import Optional

import yaml

from batchrun.errors import BatchError
from batchrun.schemas import JobDef


class JobNotFoundError(BatchError):
    """Raised when a job definition is not found."""
    pass


class JobValidationError(BatchError):
    """Raised when a job definition fails validation."""
    pass


class JobRegistry:
    """
    Registry for loading and caching JobDefs.

    The file name (without extension) is the job name. Subdirectories are
    searched too; anything under a "_deprecated" directory is ignored.

    Example directory structure:
        jobs/
            hello_csv.yaml
            imports/
                import_movies.yaml
    """

    def __init__(self, definitions_dir: Path | str):
        """
        Initialize the registry.

        Args:
            definitions_dir: Directory containing job definition files
        """
        self._definitions_dir = Path(definitions_dir)
        self._cache: dict[str, JobDef] = {}
        self._paths: dict[str, Path] = {}

    @property
    def definitions_dir(self) -> Path:
        return self._definitions_dir

    def load(self, job_name: str) -> JobDef:
        """
        Load a JobDef by name.

        Searches for {job_name}.yaml, .yml or .json in the definitions
        directory tree, YAML first. Results are cached.

        Args:
            job_name: The job name (filename without extension)

        Returns:
            The loaded JobDef

        Raises:
            JobNotFoundError: If no definition file exists
            JobValidationError: If the file cannot be parsed or is invalid
        """
        if job_name in self._cache:
            return self._cache[job_name]

        def_path = self._find_definition(job_name)
        if def_path is None:
            raise JobNotFoundError(f"Job definition not found: {job_name}")

        try:
            data = self._load_file(def_path)
        except Exception as e:
            raise JobValidationError(f"Failed to load {def_path}: {e}") from e

        if not isinstance(data, dict):
            raise JobValidationError(f"Invalid JobDef in {def_path}: expected a mapping")
        data.setdefault("name", job_name)

        try:
            job_def = JobDef.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise JobValidationError(f"Invalid JobDef in {def_path}: {e}") from e

        if job_def.name != job_name:
            raise JobValidationError(
                f"Job name mismatch: file is '{job_name}' but name is '{job_def.name}'"
            )

        self._cache[job_name] = job_def
        self._paths[job_name] = def_path
        return job_def

    def path_of(self, job_name: str) -> Optional[Path]:
        """Definition file of a loaded job, or None if it was not loaded."""
        return self._paths.get(job_name)

    def _load_file(self, path: Path) -> dict:
        suffix = path.suffix.lower()
        with open(path) as f:
            if suffix in (".yaml", ".yml"):
                return yaml.safe_load(f)
            elif suffix == ".json":
                return json.load(f)
            else:
                raise ValueError(f"Unsupported file format: {suffix}")

    def list_jobs(self) -> list[str]:
        """
        List all available job names.

        Returns:
            Sorted job names found in the definitions directory
        """
        if not self._definitions_dir.exists():
            return []

        names = set()
        for ext in ["*.yaml", "*.yml", "*.json"]:
            for f in self._definitions_dir.glob(f"**/{ext}"):
                if "_deprecated" not in f.parts:
                    names.add(f.stem)
        return sorted(names)

    def _find_definition(self, job_name: str) -> Optional[Path]:
        if not self._definitions_dir.exists():
            return None
        for ext in [".yaml", ".yml", ".json"]:
            filename = f"{job_name}{ext}"
            root_path = self._definitions_dir / filename
            if root_path.exists():
                return root_path
            matches = [m for m in self._definitions_dir.glob(f"**/{filename}") if "_deprecated" not in m.parts]
            if matches:
                return sorted(matches)[0]
        return None

    @staticmethod
    def compute_hash(job_def: JobDef) -> str:
        """
        SHA256 of a JobDef over canonical JSON (sorted keys, compact).

        Args:
            job_def: The job definition to hash

        Returns:
            Hexadecimal SHA256 hash string
        """
        canonical = json.dumps(job_def.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def clear_cache(self) -> None:
        """Clear the definition cache."""
        self._cache.clear()
        self._paths.clear()

    def preload_all(self) -> int:
        """
        Load every definition, failing on the first invalid one.

        Returns:
            Number of jobs loaded

        Raises:
            JobValidationError: If any job definition is invalid
        """
        count = 0
        for job_name in self.list_jobs():
            self.load(job_name)
            count += 1
        return count
