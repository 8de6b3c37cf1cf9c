"""QC figure: template vs rescaled template, three orthogonal mid-slices."""

import matplotlib
matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np

VIEWS = [
    ("Sagittal", 0),
    ("Coronal", 1),
    ("Axial", 2),
]


def _mid_slice(data, axis):
    idx = data.shape[axis] // 2
    return np.take(data, idx, axis=axis).T


def generate_qc_figure(template_img, rescaled_img, subject_id, factors, out_path):
    """Save a 2x3 panel: template on top, rescaled template below.

    Both volumes share the template's voxel grid, so the same slice index
    shows how far the anatomy moved.
    """
    template = np.asarray(template_img.dataobj, dtype=np.float32)
    rescaled = np.asarray(rescaled_img.dataobj, dtype=np.float32)

    vmax = float(np.percentile(template, 99.5)) or 1.0

    fig, axes = plt.subplots(2, 3, figsize=(12, 8))
    for col, (name, axis) in enumerate(VIEWS):
        for row, (label, data) in enumerate((("Template", template),
                                             ("Rescaled", rescaled))):
            ax = axes[row, col]
            ax.imshow(_mid_slice(data, axis), cmap="gray", origin="lower",
                      vmin=0.0, vmax=vmax, interpolation="nearest")
            ax.set_title(f"{label} - {name}", fontsize=10)
            ax.axis("off")

    fig.suptitle(f"{subject_id}  scaling factors {factors}", fontsize=12)
    fig.tight_layout()

    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(str(out_path), dpi=100)
    plt.close(fig)
    print(f"  Saved QC figure {out_path}")
    return out_path
