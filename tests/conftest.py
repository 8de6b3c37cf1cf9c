"""Shared fixtures: small synthetic templates and a recording fake engine."""

import threading
import time
from pathlib import Path

import nibabel as nib
import numpy as np
import pytest

from mni_rescale.pipeline import RescaleOptions


SHAPE = (20, 24, 18)
VOXEL_MM = 2.0

# Subject from the original usage example
EXAMPLE = {"width": 14.5, "depth": 19.2, "height": 13.8}


def _template_affine(shape=SHAPE, dx=VOXEL_MM):
    """Voxel-to-world affine with the grid centre at world (0, 0, 0)."""
    affine = np.diag([dx, dx, dx, 1.0])
    affine[:3, 3] = [-(n // 2) * dx for n in shape]
    return affine


def _ellipsoid(shape=SHAPE, radii=(6, 7, 5), value=100.0):
    """Solid ellipsoid centred on the voxel that maps to the world origin."""
    centre = [n // 2 for n in shape]
    i, j, k = np.meshgrid(*(np.arange(n) for n in shape), indexing="ij")
    r2 = sum(((g - c) / r) ** 2 for g, c, r in zip((i, j, k), centre, radii))
    data = np.zeros(shape, dtype=np.float32)
    data[r2 <= 1.0] = value
    return data


def _save_template(path, data, affine):
    img = nib.Nifti1Image(data, affine)
    img.set_sform(affine, code=4)
    img.set_qform(affine, code=4)
    nib.save(img, str(path))
    return path


class RecordingEngine:
    """Fake resampling engine that records its calls.

    ``write`` controls whether the prefixed artifact appears in work_dir;
    ``delay`` and ``exc`` simulate a slow or failing engine; ``finished``
    is set once the call returns, even after it was abandoned.
    """

    def __init__(self, write=True, delay=0.0, exc=None):
        self.write = write
        self.delay = delay
        self.exc = exc
        self.calls = []
        self.finished = threading.Event()

    def __call__(self, volume, affine, config, work_dir):
        self.calls.append({
            "filename": volume.get_filename(),
            "affine": np.array(affine),
            "config": config,
            "work_dir": Path(work_dir),
        })
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.exc is not None:
                raise self.exc
            if self.write:
                name = config.prefix + Path(volume.get_filename()).name
                (Path(work_dir) / name).write_bytes(b"resampled")
        finally:
            self.finished.set()


@pytest.fixture
def template_path(tmp_path):
    """Float32 ellipsoid template on a 2 mm grid."""
    path = tmp_path / "template" / "mni_test_template.nii"
    path.parent.mkdir(exist_ok=True)
    return _save_template(path, _ellipsoid(), _template_affine())


@pytest.fixture
def int_template_path(tmp_path):
    """Same geometry stored as int16."""
    path = tmp_path / "template" / "mni_int_template.nii.gz"
    path.parent.mkdir(exist_ok=True)
    data = _ellipsoid().astype(np.int16)
    return _save_template(path, data, _template_affine())


@pytest.fixture
def output_dir(tmp_path):
    """Output root that does not exist yet."""
    return tmp_path / "Output"


@pytest.fixture
def options(template_path, output_dir):
    return RescaleOptions(template_path=str(template_path),
                          output_dir=str(output_dir), timeout=60.0)


@pytest.fixture
def make_engine():
    """Factory fixture returning RecordingEngine."""
    return RecordingEngine


@pytest.fixture
def example_measurements():
    return dict(EXAMPLE)


def wait_until_gone(path, timeout=5.0):
    """Poll until ``path`` no longer exists; True if it disappeared."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not Path(path).exists():
            return True
        time.sleep(0.02)
    return not Path(path).exists()


@pytest.fixture
def gone():
    """Factory fixture returning wait_until_gone."""
    return wait_until_gone
