"""
Grid topologies.

A topology decides which cells of a rows x cols target carry a detectable
marker, what the corner lattice looks like and in which order corners are
reported. Everything downstream (mapper, estimator, verifier) asks the
topology instead of branching on a mode code.

Cell (i, j) has its centre at (x=j+0.5, y=i+0.5) in cell units.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import IntEnum

import numpy as np


class TopologyCode(IntEnum):
    """Integer finder codes accepted on the public boundary."""

    REGULAR = 0
    EXTENDED = 5
    MASK_INNERS = 8
    INVERTED = 10


# Edge names in walking order: clockwise from the (0, 0) cell.
EDGES = ("top", "right", "bottom", "left")


class GridTopology(ABC):
    """Layout convention mapping markers onto the logical cell grid."""

    code: TopologyCode
    # Markers are brighter than their surroundings
    invert_image: bool = False
    # Lattice corners coincide with real image corners (worth a subpixel snap)
    snap_corners: bool = False
    # Each marker owns its corners instead of sharing a lattice with neighbours
    corners_per_cell: bool = False

    def validate(self, rows: int, cols: int) -> None:
        if rows < 2 or cols < 2:
            raise ValueError(f"Grid needs at least 2x2 cells, got {rows}x{cols}")

    def findable_mask(self, rows: int, cols: int) -> np.ndarray:
        """(rows, cols) boolean array, True where a cell carries a marker."""
        return np.ones((rows, cols), dtype=bool)

    def patch_count(self, rows: int, cols: int) -> int:
        return int(self.findable_mask(rows, cols).sum())

    def findable_cells(self, rows: int, cols: int) -> list[tuple[int, int]]:
        """Findable cells in row-major order."""
        mask = self.findable_mask(rows, cols)
        return [(int(i), int(j)) for i, j in zip(*np.nonzero(mask))]

    def border_patch_layout(self, rows: int, cols: int) -> dict[str, list[tuple[int, int]]]:
        """
        Findable cells along each edge, in walking order.

        Each edge starts at its own corner cell and ends at the next corner
        cell clockwise, so consecutive edges share their end cells.
        """
        mask = self.findable_mask(rows, cols)
        paths = {
            "top": [(0, j) for j in range(cols)],
            "right": [(i, cols - 1) for i in range(rows)],
            "bottom": [(rows - 1, j) for j in range(cols - 1, -1, -1)],
            "left": [(i, 0) for i in range(rows - 1, -1, -1)],
        }
        return {edge: [c for c in path if mask[c]] for edge, path in paths.items()}

    @abstractmethod
    def corner_lattice_shape(self, rows: int, cols: int) -> tuple[int, int]:
        """Shape of the corner lattice in row-by-row form."""

    @abstractmethod
    def ideal_corner_grid(self, rows: int, cols: int, marker_ratio: float) -> np.ndarray:
        """(lattice_rows, lattice_cols, 2) ideal corner positions in cell units."""

    def expected_corner_count(self, rows: int, cols: int) -> int:
        lr, lc = self.corner_lattice_shape(rows, cols)
        return lr * lc

    def cell_ordering(self) -> str:
        """Order of the reported corner set: "row-major" or "quad"."""
        return "row-major"

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class _LatticeTopology(GridTopology):
    """Corners are the shared (rows+1) x (cols+1) cell-boundary lattice."""

    def corner_lattice_shape(self, rows: int, cols: int) -> tuple[int, int]:
        return rows + 1, cols + 1

    def ideal_corner_grid(self, rows: int, cols: int, marker_ratio: float) -> np.ndarray:
        ys, xs = np.mgrid[0 : rows + 1, 0 : cols + 1]
        return np.dstack([xs, ys]).astype(np.float64)


class RegularTopology(_LatticeTopology):
    """Every cell holds a dark marker on a bright background."""

    code = TopologyCode.REGULAR


class InvertedTopology(_LatticeTopology):
    """Every cell holds a bright marker on a dark background."""

    code = TopologyCode.INVERTED
    invert_image = True


class ExtendedTopology(_LatticeTopology):
    """
    Chessboard whose dark squares are the markers.

    Only cells with even (i + j) are findable. Rows and cols must be odd so
    the four corner cells are dark, and the reported lattice includes the
    outer border corners.
    """

    code = TopologyCode.EXTENDED
    snap_corners = True

    def validate(self, rows: int, cols: int) -> None:
        super().validate(rows, cols)
        if rows < 3 or cols < 3 or rows % 2 == 0 or cols % 2 == 0:
            raise ValueError(
                f"Extended chessboard needs odd rows and cols >= 3, got {rows}x{cols}"
            )

    def findable_mask(self, rows: int, cols: int) -> np.ndarray:
        i, j = np.indices((rows, cols))
        return (i + j) % 2 == 0


class MaskWithInnersTopology(GridTopology):
    """
    Plate with a grid of square holes, bright through the mask.

    Each hole contributes its own four corners. Internally they form a
    (2*rows) x (2*cols) lattice; the reported set is quad-clustered.
    """

    code = TopologyCode.MASK_INNERS
    invert_image = True
    snap_corners = True
    corners_per_cell = True

    def corner_lattice_shape(self, rows: int, cols: int) -> tuple[int, int]:
        return 2 * rows, 2 * cols

    def ideal_corner_grid(self, rows: int, cols: int, marker_ratio: float) -> np.ndarray:
        half = marker_ratio / 2.0
        offsets = np.array([0.5 - half, 0.5 + half])
        xs = (np.arange(cols)[:, None] + offsets[None, :]).ravel()
        ys = (np.arange(rows)[:, None] + offsets[None, :]).ravel()
        gx, gy = np.meshgrid(xs, ys)
        return np.dstack([gx, gy])

    def cell_ordering(self) -> str:
        return "quad"


_TOPOLOGIES: dict[TopologyCode, GridTopology] = {
    TopologyCode.REGULAR: RegularTopology(),
    TopologyCode.EXTENDED: ExtendedTopology(),
    TopologyCode.MASK_INNERS: MaskWithInnersTopology(),
    TopologyCode.INVERTED: InvertedTopology(),
}


def get_topology(code: int | TopologyCode) -> GridTopology:
    """Resolve an integer finder code to its topology."""
    try:
        return _TOPOLOGIES[TopologyCode(code)]
    except ValueError:
        valid = ", ".join(f"{c.name}={c.value}" for c in TopologyCode)
        raise ValueError(f"Unknown topology code {code!r} (expected one of {valid})") from None
