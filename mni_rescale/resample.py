"""Template loading and reslicing through an injected resampling engine.

The engine is any callable with the signature::

    engine(volume, affine, config, work_dir) -> None

It must write ``work_dir / (config.prefix + <template base name>)``.  The
organizer relies on that naming to find the artifact.  ``NiftiResampler``
is the default, in-process engine.
"""

import importlib
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import nibabel as nib
import numpy as np
from nibabel.filebasedimages import ImageFileError
from scipy.ndimage import map_coordinates

from mni_rescale.errors import (
    ConfigurationError,
    ExternalEngineError,
    InputError,
)

# Engine interpolation codes
INTERPOLATION_CODES = {"nearest": 0, "linear": 1, "spline": 2}

DEFAULT_RESAMPLER = "mni_rescale.resample:NiftiResampler"
DEFAULT_TIMEOUT = 600.0


@dataclass(frozen=True)
class ResliceConfig:
    interp: int
    prefix: str
    mean: bool = False   # no mean image
    which: int = 2       # reslice the full volume


def interpolation_code(mode):
    """Map ``nearest|linear|spline`` (or a code 0/1/2) to the engine code."""
    if isinstance(mode, bool):
        raise InputError(f"Unknown interpolation mode: {mode!r}")
    if isinstance(mode, (int, np.integer)):
        if int(mode) in INTERPOLATION_CODES.values():
            return int(mode)
    elif isinstance(mode, str) and mode.strip().lower() in INTERPOLATION_CODES:
        return INTERPOLATION_CODES[mode.strip().lower()]
    choices = ", ".join(INTERPOLATION_CODES)
    raise InputError(f"Unknown interpolation mode: {mode!r} (expected {choices})")


def template_basename(path):
    """Base file name of a template, keeping compound extensions (.nii.gz)."""
    return Path(path).name


# ---------------------------------------------------------------------------
# Template loading
# ---------------------------------------------------------------------------
def load_template(template_path):
    """Load the reference template; read-only to the rest of the pipeline."""
    path = Path(template_path)
    if not path.is_file():
        raise ConfigurationError(f"Template file not found: {path}")
    try:
        img = nib.load(str(path))
    except (ImageFileError, OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read template {path}: {e}") from e
    if len(img.shape) != 3:
        raise ConfigurationError(
            f"Template {path} must be a 3-D volume, got shape {img.shape}"
        )
    return img


# ---------------------------------------------------------------------------
# Engine resolution
# ---------------------------------------------------------------------------
def resolve_resampler(location=DEFAULT_RESAMPLER):
    """Import an engine from a ``"module:attribute"`` location.

    A class is instantiated with no arguments; any other callable is used
    as-is.
    """
    module_name, sep, attr = str(location).partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(
            f"Resampler location must look like 'module:attribute', got {location!r}"
        )
    try:
        mod = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Could not import resampler module {module_name}: {e}") from e
    try:
        target = getattr(mod, attr)
    except AttributeError:
        raise ConfigurationError(f"Resampler {attr!r} not found in {module_name}") from None

    engine = target() if isinstance(target, type) else target
    if not callable(engine):
        raise ConfigurationError(f"Resampler at {location!r} is not callable")
    return engine


# ---------------------------------------------------------------------------
# Default engine
# ---------------------------------------------------------------------------
class NiftiResampler:
    """Reslice a rescaled template back onto its original voxel grid.

    The source is the template's voxel data placed in world space by the
    composed affine; the target grid is the template's own shape and
    affine.  Interpolation code 0/1/2 is used directly as the spline order
    (nearest, trilinear, quadratic B-spline).
    """

    def __init__(self, cval=0.0, slab_size=32):
        self.cval = cval
        self.slab_size = slab_size

    def __call__(self, volume, affine, config, work_dir):
        filename = volume.get_filename()
        if filename is None:
            raise ValueError("Volume has no file name to derive the output name from")

        target_affine = volume.affine
        source_data = volume.get_fdata(dtype=np.float32)
        out = self.reslice(source_data, affine, target_affine,
                           source_data.shape, order=config.interp)

        on_disk = volume.get_data_dtype()
        if np.issubdtype(on_disk, np.integer):
            info = np.iinfo(on_disk)
            out = np.clip(np.round(out), info.min, info.max).astype(on_disk)

        header = volume.header.copy()
        header.set_data_dtype(out.dtype)
        img = nib.Nifti1Image(out, target_affine, header)
        img.set_qform(target_affine, code=int(volume.header["qform_code"]) or 1)
        img.set_sform(target_affine, code=int(volume.header["sform_code"]) or 1)

        out_path = Path(work_dir) / (config.prefix + template_basename(filename))
        nib.save(img, str(out_path))

    def reslice(self, source_data, source_affine, target_affine, target_shape,
                order=1):
        """Sample ``source_data`` at every voxel of the target grid.

        Returns
        -------
        ndarray of ``target_shape``, float32
        """
        # target voxel -> world -> source voxel
        M = np.linalg.inv(source_affine) @ target_affine

        Ni, Nj, Nk = target_shape
        out = np.empty(target_shape, dtype=np.float32)
        jj = np.arange(Nj, dtype=np.float64)
        kk = np.arange(Nk, dtype=np.float64)

        for i0 in range(0, Ni, self.slab_size):
            i1 = min(i0 + self.slab_size, Ni)
            ii = np.arange(i0, i1, dtype=np.float64)
            grid = np.stack(np.meshgrid(ii, jj, kk, indexing="ij"))

            coords = np.tensordot(M[:3, :3], grid, axes=1)
            coords += M[:3, 3].reshape(3, 1, 1, 1)
            del grid

            out[i0:i1] = map_coordinates(source_data, coords, order=order,
                                         mode="constant", cval=self.cval)
        return out


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------
def resample(volume, affine, interpolation, output_prefix, work_dir,
             engine, timeout=DEFAULT_TIMEOUT):
    """Issue one synchronous reslice request to ``engine``.

    The call runs in a daemon thread, so a hung engine is abandoned after
    ``timeout`` seconds and never holds the process open.  An abandoned
    call removes its own late output when it eventually returns.  Any
    engine exception or a timeout is reported as :class:`ExternalEngineError`.

    Returns
    -------
    str
        File name the engine is expected to have written into ``work_dir``.
    """
    config = ResliceConfig(interp=interpolation_code(interpolation),
                           prefix=output_prefix)
    expected = config.prefix + template_basename(volume.get_filename())
    late_output = Path(work_dir) / expected

    outcome = {"done": False, "abandoned": False, "error": None}
    guard = threading.Lock()

    def _call():
        try:
            engine(volume, affine, config, Path(work_dir))
        except BaseException as e:
            outcome["error"] = e
        finally:
            with guard:
                outcome["done"] = True
                abandoned = outcome["abandoned"]
            if abandoned and late_output.exists():
                late_output.unlink()

    worker = threading.Thread(target=_call, name=f"reslice-{expected}",
                              daemon=True)
    t0 = time.monotonic()
    worker.start()
    worker.join(timeout)

    with guard:
        if not outcome["done"]:
            outcome["abandoned"] = True
    if outcome["abandoned"]:
        raise ExternalEngineError(
            f"Resampler did not finish within {timeout:g}s for {expected}"
        )

    error = outcome["error"]
    if error is not None:
        raise ExternalEngineError(
            f"Resampler failed for {expected}: {type(error).__name__}: {error}"
        ) from error

    print(f"  Reslice finished in {time.monotonic() - t0:.1f}s")
    return expected
