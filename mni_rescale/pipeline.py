"""Create a subject-specific rescaled MNI template.

Linear pipeline per subject:
  1. Validate measurements      (measurements)
  2. Compute scale factors      (scaling)
  3. Compose scaled affine      (affine)
  4. Reslice via the engine     (resample)
  5. Move into Output/<subject> (organize)

Usage:
    python -m mni_rescale.pipeline --subject sub001 \\
        --width 14.5 --depth 19.2 --height 13.8
"""

import argparse
import sys
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

import nibabel as nib
import numpy as np

from mni_rescale.affine import apply_scaling
from mni_rescale.errors import (
    ConfigurationError,
    InputError,
    MissingOutputError,
    RescaleError,
)
from mni_rescale.measurements import validate
from mni_rescale.organize import organize_output
from mni_rescale.resample import (
    DEFAULT_RESAMPLER,
    DEFAULT_TIMEOUT,
    INTERPOLATION_CODES,
    interpolation_code,
    load_template,
    resample,
    resolve_resampler,
)
from mni_rescale.scaling import MNI_REFERENCE, compute_scaling_factors

DEFAULT_TEMPLATE = "./mni_icbm152_t1_tal_nlin_asym_09c.nii"
DEFAULT_OUTPUT_DIR = "./Output/"


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------
@dataclass
class RescaleOptions:
    template_path: str = DEFAULT_TEMPLATE
    output_dir: str = DEFAULT_OUTPUT_DIR
    resampler_location: str = DEFAULT_RESAMPLER
    resampler: object = None          # injected engine, wins over location
    interpolation: object = "linear"  # name or code 0/1/2
    timeout: float = DEFAULT_TIMEOUT
    work_dir: str = None              # None: private temp dir per job
    qc_figure: bool = False
    verbose: bool = False
    reference: object = MNI_REFERENCE  # ReferenceGeometry of the template


# ---------------------------------------------------------------------------
# Job state machine
# ---------------------------------------------------------------------------
class JobState(Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    SCALED = "scaled"
    TRANSFORMED = "transformed"
    RESAMPLED = "resampled"
    ORGANIZED = "organized"
    DONE = "done"
    FAILED = "failed"


_ORDER = [
    JobState.PENDING, JobState.VALIDATED, JobState.SCALED,
    JobState.TRANSFORMED, JobState.RESAMPLED, JobState.ORGANIZED,
    JobState.DONE,
]


@dataclass
class RescaleJob:
    """One subject, processed start to finish; never reused."""
    subject_id: str
    measurements: object
    state: JobState = JobState.PENDING
    factors: object = None
    affine: np.ndarray = None
    artifact: object = None
    error: Exception = None
    verbose: bool = False
    history: list = field(default_factory=list)

    @property
    def finished(self):
        return self.state in (JobState.DONE, JobState.FAILED)

    def advance(self, state):
        if self.finished or _ORDER.index(state) != _ORDER.index(self.state) + 1:
            raise RuntimeError(
                f"Illegal transition {self.state.name} -> {state.name} "
                f"for subject {self.subject_id}"
            )
        self._set(state)

    def fail(self, error):
        if self.finished:
            raise RuntimeError(
                f"Job for subject {self.subject_id} already {self.state.name}"
            )
        self.error = error
        self._set(JobState.FAILED)

    def _set(self, state):
        self.history.append(state)
        self.state = state
        if self.verbose:
            print(f"  [{self.subject_id}] -> {state.name}")


# ---------------------------------------------------------------------------
# Working context
# ---------------------------------------------------------------------------
_TEMPLATE_LOCKS = {}
_TEMPLATE_LOCKS_GUARD = threading.Lock()


def _template_lock(template_path):
    key = str(Path(template_path).resolve())
    with _TEMPLATE_LOCKS_GUARD:
        return _TEMPLATE_LOCKS.setdefault(key, threading.Lock())


@contextmanager
def working_context(options, subject_id):
    """Directory the engine writes into.

    A private temporary directory per job by default.  A shared
    ``work_dir`` serializes reslice+move per template path instead, since
    two subjects would otherwise race on the same intermediate file.
    """
    if options.work_dir is None:
        with tempfile.TemporaryDirectory(prefix=f"mni_rescale_{subject_id}_") as d:
            yield Path(d)
        return

    work_dir = Path(options.work_dir)
    if not work_dir.is_dir():
        raise ConfigurationError(f"Working directory not found: {work_dir}")
    with _template_lock(options.template_path):
        yield work_dir


def check_subject_id(subject_id):
    if subject_id is None or not str(subject_id).strip():
        raise InputError("Subject identifier is required")
    subject_id = str(subject_id)
    if any(sep in subject_id for sep in ("/", "\\")) or subject_id in (".", ".."):
        raise InputError(f"Subject identifier must be a plain name: {subject_id!r}")
    return subject_id


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------
def run_job(job, options):
    """Drive ``job`` through every state; mark it FAILED and re-raise on error."""
    try:
        _run(job, options)
    except Exception as e:
        job.fail(e)
        raise
    return job


def _run(job, options):
    subject_id = check_subject_id(job.subject_id)
    job.measurements = validate(job.measurements)
    interp = interpolation_code(options.interpolation)
    job.advance(JobState.VALIDATED)

    job.factors = compute_scaling_factors(job.measurements, options.reference)
    job.advance(JobState.SCALED)
    print(f"Subject: {subject_id}")
    print(f"Scaling factors - X: {job.factors.fx:.3f}, "
          f"Y: {job.factors.fy:.3f}, Z: {job.factors.fz:.3f}")

    # First file access
    engine = options.resampler
    if engine is None:
        engine = resolve_resampler(options.resampler_location)
    template = load_template(options.template_path)

    job.affine = apply_scaling(template.affine, job.factors)
    job.advance(JobState.TRANSFORMED)

    with working_context(options, subject_id) as work_dir:
        print(f"Reslicing template for subject {subject_id}...")
        expected = resample(template, job.affine, interp, f"{subject_id}_",
                            work_dir, engine, timeout=options.timeout)
        job.advance(JobState.RESAMPLED)

        job.artifact = organize_output(subject_id, options.output_dir,
                                       expected, work_dir)
        job.advance(JobState.ORGANIZED)

    if options.qc_figure:
        save_qc_figure(template, job, options)

    job.advance(JobState.DONE)
    print(f"Successfully created rescaled MNI template for subject {subject_id}")
    print(f"Final scaling factors: {job.factors}")


def save_qc_figure(template, job, options):
    """Write Output/qc/<subject>_qc.png; failures only warn."""
    from mni_rescale.figures import generate_qc_figure

    out_path = Path(options.output_dir) / "qc" / f"{job.subject_id}_qc.png"
    try:
        rescaled = nib.load(str(job.artifact.path))
        generate_qc_figure(template, rescaled, job.subject_id, job.factors, out_path)
    except Exception as e:
        print(f"  WARNING: QC figure failed: {e}")


def rescale_template(subject_id, measurements, options=None, **overrides):
    """Rescale the reference template to one subject's head.

    Parameters
    ----------
    subject_id : str
    measurements : mapping or HeadMeasurements
        ``width``, ``depth`` and ``height`` in cm.
    options : RescaleOptions, optional
    **overrides
        Individual :class:`RescaleOptions` fields.

    Returns
    -------
    ScalingFactors
    """
    options = replace(options or RescaleOptions(), **overrides)
    job = RescaleJob(subject_id, measurements, verbose=options.verbose)
    run_job(job, options)
    return job.factors


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def add_option_args(parser):
    """Options shared by the single-subject and batch commands."""
    parser.add_argument("--template", default=DEFAULT_TEMPLATE,
                        help=f"Reference template NIfTI (default: {DEFAULT_TEMPLATE})")
    parser.add_argument("--output-dir", default=DEFAULT_OUTPUT_DIR,
                        help=f"Output root (default: {DEFAULT_OUTPUT_DIR})")
    parser.add_argument("--resampler", default=DEFAULT_RESAMPLER,
                        help="Resampling engine as module:attribute")
    parser.add_argument("--interpolation", default="linear",
                        choices=list(INTERPOLATION_CODES.keys()),
                        help="Interpolation method (default: linear)")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT,
                        help="Seconds to wait for the engine (default: 600)")
    parser.add_argument("--work-dir", default=None,
                        help="Shared engine working directory (default: private temp dir)")
    parser.add_argument("--qc", action="store_true",
                        help="Save a QC figure to <output-dir>/qc/")
    parser.add_argument("--verbose", action="store_true",
                        help="Print job state transitions")


def options_from_args(args):
    return RescaleOptions(
        template_path=args.template,
        output_dir=args.output_dir,
        resampler_location=args.resampler,
        interpolation=args.interpolation,
        timeout=args.timeout,
        work_dir=args.work_dir,
        qc_figure=args.qc,
        verbose=args.verbose,
    )


def parse_args(argv=None):
    """Parse CLI arguments for a single subject."""
    parser = argparse.ArgumentParser(
        description="Rescale the MNI template to a subject's head measurements."
    )
    parser.add_argument("--subject", required=True, help="Subject ID")
    parser.add_argument("--width", type=float, help="Ear-to-ear distance (cm)")
    parser.add_argument("--depth", type=float, help="Anterior-posterior depth (cm)")
    parser.add_argument("--height", type=float, help="Ear-to-vertex distance (cm)")
    add_option_args(parser)
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    measurements = {"width": args.width, "depth": args.depth, "height": args.height}

    t0 = time.monotonic()
    try:
        factors = rescale_template(args.subject, measurements, options_from_args(args))
    except MissingOutputError as e:
        print(f"WARNING: {e}")
        return None
    except RescaleError as e:
        print(f"FATAL: {type(e).__name__}: {e}")
        sys.exit(1)

    print(f"[{args.subject}] {time.monotonic() - t0:.1f}s")
    return factors


if __name__ == "__main__":
    main()
