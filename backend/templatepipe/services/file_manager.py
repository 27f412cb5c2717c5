"""
File management service for templatepipe.

Handles per-run working directories and the local output directory, with
path traversal protection.
"""
import logging
import shutil
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from templatepipe.config import settings

logger = logging.getLogger(__name__)


class FileManager:
    """
    Manage filesystem artifacts for template jobs.

    - {base_dir}/{job_id}-{run}/ - scratch directory of one run, removed when
      the run ends
    - {output_dir}/{job_id}.mp4 - published output when no object storage is
      configured
    """

    def __init__(
        self,
        base_dir: str | Path | None = None,
        output_dir: str | Path | None = None,
    ):
        """
        Initialize FileManager.

        Args:
            base_dir: Root for per-run scratch directories.
                     If None, uses settings.storage.tmp_dir
            output_dir: Root for locally published outputs.
                     If None, uses settings.storage.output_dir
        """
        if base_dir is None:
            base_dir = settings.storage.tmp_dir
        if output_dir is None:
            output_dir = settings.storage.output_dir

        self.base_dir = Path(base_dir).resolve()
        self.output_dir = Path(output_dir).resolve()

    def _contained(self, root: Path, name: str) -> Path:
        path = (root / name).resolve()
        # Path traversal protection
        if not path.is_relative_to(root):
            raise ValueError("Invalid job path")
        return path

    @contextmanager
    def run_workspace(self, job_id: uuid.UUID) -> Iterator[Path]:
        """
        Create a fresh scratch directory for one run of a job.

        The directory and everything in it are deleted when the context
        exits, whether the run succeeded or failed.
        """
        self.base_dir.mkdir(parents=True, exist_ok=True)
        workdir = self._contained(self.base_dir, f"{job_id}-{uuid.uuid4().hex[:8]}")
        workdir.mkdir()
        logger.debug(f"Created run workspace {workdir}")
        try:
            yield workdir
        finally:
            shutil.rmtree(workdir, ignore_errors=True)
            logger.debug(f"Removed run workspace {workdir}")

    def get_output_path(self, job_id: uuid.UUID, suffix: str = ".mp4") -> Path:
        """
        Get path for a job's locally published output.

        Args:
            job_id: UUID of the job
            suffix: File extension of the output

        Returns:
            Path to output file location
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        return self._contained(self.output_dir, f"{job_id}{suffix}")
