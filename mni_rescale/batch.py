"""Rescale the template for every subject in a measurements CSV.

CSV header: ``subject_id,width,depth,height``.  Each row is an independent
job.  Writes ``<output-dir>/batch_report.json``.

Usage:
    python -m mni_rescale.batch measurements.csv --keep-going --jobs 4
"""

import argparse
import csv
import json
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from mni_rescale.errors import (
    ConfigurationError,
    InputError,
    MissingOutputError,
    RescaleError,
)
from mni_rescale.measurements import REQUIRED_FIELDS
from mni_rescale.pipeline import (
    RescaleJob,
    add_option_args,
    options_from_args,
    run_job,
)

CSV_COLUMNS = ("subject_id",) + REQUIRED_FIELDS


@dataclass
class BatchResult:
    subject_id: str
    status: str          # "ok" | "failed" | "missing_output" | "skipped"
    factors: object = None
    artifact: object = None
    error: str = None

    def as_dict(self):
        return {
            "subject_id": self.subject_id,
            "status": self.status,
            "scaling_factors": self.factors.as_list() if self.factors else None,
            "output": str(self.artifact.path) if self.artifact else None,
            "error": self.error,
        }


def read_measurements_csv(path):
    """Return a list of row dicts; blank cells become missing fields."""
    path = Path(path)
    with open(path, newline="") as f:
        reader = csv.DictReader(f)
        if reader.fieldnames is None or "subject_id" not in reader.fieldnames:
            raise InputError(f"{path}: CSV header must include 'subject_id'")
        rows = []
        for row in reader:
            rows.append({k.strip(): (v.strip() if isinstance(v, str) else v)
                         for k, v in row.items() if k is not None})
    return rows


def _check_unique(rows):
    seen = set()
    for row in rows:
        sid = row.get("subject_id")
        if sid in seen:
            raise InputError(f"Duplicate subject_id in batch: {sid}")
        seen.add(sid)


def _run_one(row, options):
    job = RescaleJob(row.get("subject_id"), row, verbose=options.verbose)
    try:
        run_job(job, options)
    except MissingOutputError as e:
        print(f"WARNING: {job.subject_id}: {e}")
        return BatchResult(job.subject_id, "missing_output", job.factors,
                           error=str(e))
    except RescaleError as e:
        print(f"ERROR: {job.subject_id}: {type(e).__name__}: {e}")
        return BatchResult(job.subject_id, "failed", job.factors,
                           error=f"{type(e).__name__}: {e}")
    return BatchResult(job.subject_id, "ok", job.factors, job.artifact)


def run_batch(rows, options, keep_going=False, jobs=1):
    """Run one job per row.

    Stops at the first failure unless ``keep_going``; the remaining
    subjects are reported as ``skipped``.  A missing artifact never stops
    the batch.  With ``jobs > 1`` rows run concurrently and every row is
    attempted.

    Returns
    -------
    list of BatchResult, in row order
    """
    _check_unique(rows)

    if jobs > 1:
        with ThreadPoolExecutor(max_workers=jobs) as pool:
            return list(pool.map(lambda r: _run_one(r, options), rows))

    results = []
    for i, row in enumerate(rows):
        print(f"\n{'─' * 60}")
        print(f"  [{i + 1}/{len(rows)}] {row.get('subject_id')}")
        print(f"{'─' * 60}")
        result = _run_one(row, options)
        results.append(result)
        if result.status == "failed" and not keep_going:
            for rest in rows[i + 1:]:
                results.append(BatchResult(rest.get("subject_id"), "skipped"))
            break
    return results


def write_report(results, output_dir):
    out_dir = Path(output_dir)
    report = {
        "created": datetime.now(timezone.utc).isoformat(),
        "n_subjects": len(results),
        "n_ok": sum(r.status == "ok" for r in results),
        "subjects": [r.as_dict() for r in results],
    }
    path = out_dir / "batch_report.json"
    try:
        out_dir.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(report, f, indent=2)
    except OSError as e:
        raise ConfigurationError(f"Cannot write batch report {path}: {e}") from e
    print(f"Saved {path}")
    return path


def parse_args(argv=None):
    """Parse CLI arguments for batch rescaling."""
    parser = argparse.ArgumentParser(
        description="Rescale the MNI template for every subject in a CSV."
    )
    parser.add_argument("csv", help="Measurements CSV (subject_id,width,depth,height)")
    parser.add_argument("--keep-going", action="store_true",
                        help="Continue with remaining subjects after a failure")
    parser.add_argument("--jobs", type=int, default=1,
                        help="Subjects processed concurrently (default: 1)")
    add_option_args(parser)
    args = parser.parse_args(argv)
    if args.jobs < 1:
        parser.error("--jobs must be >= 1")
    return args


def main(argv=None):
    args = parse_args(argv)
    options = options_from_args(args)

    try:
        rows = read_measurements_csv(args.csv)
        results = run_batch(rows, options, keep_going=args.keep_going,
                            jobs=args.jobs)
    except (OSError, RescaleError) as e:
        print(f"FATAL: {e}")
        sys.exit(1)

    try:
        write_report(results, options.output_dir)
    except ConfigurationError as e:
        print(f"WARNING: {e}")

    print("\n" + "=" * 60)
    for r in results:
        factors = str(r.factors) if r.factors else "-"
        print(f"  {str(r.subject_id):20s} {r.status:15s} {factors}")
    print("=" * 60)

    if any(r.status == "failed" for r in results):
        sys.exit(1)
    return results


if __name__ == "__main__":
    main()
