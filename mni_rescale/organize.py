"""Move the resampled template into its subject-scoped output directory."""

import errno
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from mni_rescale.errors import ConfigurationError, MissingOutputError


@dataclass(frozen=True)
class OutputArtifact:
    path: Path
    subject_id: str


def subject_dir(output_dir, subject_id):
    return Path(output_dir) / subject_id


def _atomic_move(src, dest):
    """Rename ``src`` onto ``dest``; across filesystems copy-then-rename."""
    try:
        os.replace(src, dest)
        return
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise

    tmp = dest.with_name(f".{dest.name}.partial")
    try:
        shutil.copy2(src, tmp)
        os.replace(tmp, dest)
    finally:
        if tmp.exists():
            tmp.unlink()
    os.unlink(src)


def organize_output(subject_id, output_dir, expected_filename, work_dir="."):
    """Adopt the engine's artifact into ``output_dir/subject_id/``.

    Safe to retry: the directory is created only if absent and an existing
    destination file is replaced.

    Raises
    ------
    MissingOutputError
        ``expected_filename`` is not in ``work_dir`` (engine failure or a
        naming mismatch).  Checked before anything is created.
    ConfigurationError
        The subject directory cannot be created or written.
    """
    source = Path(work_dir) / expected_filename
    if not source.is_file():
        raise MissingOutputError(source)

    dest_dir = subject_dir(output_dir, subject_id)
    destination = dest_dir / expected_filename
    try:
        if not dest_dir.is_dir():
            dest_dir.mkdir(parents=True, exist_ok=True)
            print(f"Created output directory: {dest_dir}")
        _atomic_move(source, destination)
    except OSError as e:
        raise ConfigurationError(f"Cannot write output to {dest_dir}: {e}") from e
    print(f"Rescaled template saved to: {destination}")
    return OutputArtifact(path=destination, subject_id=subject_id)
