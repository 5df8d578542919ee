"""
Neighbour-joining guide tree construction.

Builds a rooted, weighted binary guide tree from a symmetric distance matrix
(Saitou & Nei). The matrix is kept as one flat row-major float64 buffer and
is folded in place as nodes merge. Edge weights are rounded to five
significant figures; intermediate sums are not rounded.
"""

import logging
import math
import sys
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)

SIGNIFICANT_FIGURES = 5


def round_to_significant_figures(value: float, digits: int = SIGNIFICANT_FIGURES) -> float:
    """Round half away from zero to a number of significant decimal digits."""
    if value == 0:
        return 0.0

    power = digits - math.ceil(math.log10(abs(value)))
    if power > sys.float_info.max_10_exp:
        # 10**power is not representable as a double
        return float(value)
    magnitude = math.pow(10.0, power)

    fraction, whole = math.modf(abs(value * magnitude))
    shifted = whole + 1.0 if fraction >= 0.5 else whole
    return math.copysign(shifted, value) / magnitude


@dataclass
class TreeEdge:
    """Directed edge from a parent vertex to a child vertex."""
    parent: int
    child: int
    weight: float


@dataclass
class GuideTree:
    """Rooted weighted binary tree.

    Vertices are integers. The first num_leaves vertices are the leaves, in
    distance matrix order; internal vertices follow in creation order.
    """
    num_leaves: int
    num_vertices: int = 0
    edges: List[TreeEdge] = field(default_factory=list)
    root: Optional[int] = None

    def add_vertex(self) -> int:
        self.num_vertices += 1
        return self.num_vertices - 1

    def add_edge(self, parent: int, child: int, weight: float) -> None:
        self.edges.append(TreeEdge(parent, child, weight))

    def is_leaf(self, vertex: int) -> bool:
        return vertex < self.num_leaves

    def leaves(self) -> List[int]:
        return list(range(self.num_leaves))

    def children(self, vertex: int) -> List[int]:
        return [edge.child for edge in self.edges if edge.parent == vertex]

    def edge_weight(self, parent: int, child: int) -> float:
        for edge in self.edges:
            if edge.parent == parent and edge.child == child:
                return edge.weight
        raise KeyError(f"No edge {parent} -> {child}")

    def total_length(self) -> float:
        return sum(edge.weight for edge in self.edges)


def _index(row: int, col: int, n: int) -> int:
    """Position of (row, col) in a flat row-major n x n buffer."""
    return row * n + col


def prepare_distance_matrix(distances: Union[np.ndarray, Sequence]) -> Tuple[np.ndarray, int]:
    """Validate a distance matrix and copy it into a flat float64 buffer.

    Accepts an n x n array or a flat row-major sequence of length n*n. The
    lower triangle is overwritten with the upper one and the diagonal is set
    to zero.

    Returns:
        Tuple of (flat buffer, n)

    Raises:
        ValueError: If the matrix is empty, not square, not finite, has
            negative entries or is not symmetric
    """
    values = np.asarray(distances, dtype=np.float64)

    if values.ndim == 2:
        if values.shape[0] != values.shape[1]:
            raise ValueError(f"Distance matrix must be square, got shape {values.shape}")
        n = values.shape[0]
    elif values.ndim == 1:
        n = math.isqrt(len(values))
        if n * n != len(values):
            raise ValueError(f"Flat distance matrix length {len(values)} is not a perfect square")
    else:
        raise ValueError(f"Distance matrix must be 1- or 2-dimensional, got {values.ndim} dimensions")

    if n == 0:
        raise ValueError("Distance matrix is empty")

    mat = values.reshape(-1).copy()
    square = mat.reshape(n, n)

    if not np.all(np.isfinite(square)):
        raise ValueError("Distance matrix contains non-finite values")
    if np.any(square < 0):
        raise ValueError("Distance matrix contains negative distances")
    if not np.allclose(square, square.T):
        raise ValueError("Distance matrix is not symmetric")

    upper = np.triu_indices(n, k=1)
    square[upper[1], upper[0]] = square[upper]
    np.fill_diagonal(square, 0.0)
    return mat, n


class NeighbourJoiningTreeBuilder:
    """Greedy neighbour-joining over a flat distance matrix.

    Among equally good pairs the first one met wins, scanning the lower
    triangle row by row. This order is arbitrary but kept stable so that the
    same matrix always gives the same tree.

    Args:
        distances: n x n matrix or flat row-major sequence of length n*n
        logger: Optional logger instance; uses the module logger if None
    """

    def __init__(self, distances: Union[np.ndarray, Sequence], logger: Optional[logging.Logger] = None):
        self.mat, self.n = prepare_distance_matrix(distances)
        self.logger = logger or logging.getLogger(__name__)

        # Per original index: current tree vertex, or None once merged away
        self.connector: List[Optional[int]] = list(range(self.n))
        # Correction subtracted from branches that reach a merged node
        self.av = np.zeros(self.n, dtype=np.float64)
        self.d_to_all_others = np.zeros(self.n, dtype=np.float64)
        self.sum_of_branches = 0.0
        self.remaining = self.n
        self.joins: List[Tuple[int, int]] = []

    def build(self) -> GuideTree:
        """Run neighbour joining and return the rooted guide tree."""
        n = self.n
        tree = GuideTree(num_leaves=n)

        if n == 1:
            tree.root = tree.add_vertex()
            return tree

        if n == 2:
            v1 = tree.add_vertex()
            v2 = tree.add_vertex()
            internal = tree.add_vertex()
            weight = round_to_significant_figures(self.mat[_index(0, 1, n)] / 2.0)
            tree.add_edge(internal, v1, weight)
            tree.add_edge(internal, v2, weight)
            tree.root = internal
            return tree

        for _ in range(n):
            tree.add_vertex()

        self._initialise_sums()

        for step in range(n - 3):
            mini, minj = self._select_pair()
            self._merge(tree, mini, minj)
            self.logger.debug(f"Neighbour joining step {step + 1}: joined {mini} and {minj}, "
                              f"{self.remaining} nodes left")

        self._join_last_three(tree)
        self.logger.debug(f"Built guide tree with {tree.num_vertices} vertices over {n} leaves")
        return tree

    def _initialise_sums(self) -> None:
        n = self.n
        mat = self.mat

        self.sum_of_branches = 0.0
        for col in range(1, n):
            for row in range(col):
                self.sum_of_branches += mat[_index(row, col, n)]

        for row in range(n):
            total = 0.0
            for col in range(n):
                total += mat[_index(row, col, n)]
            self.d_to_all_others[row] = total

    def _select_pair(self) -> Tuple[int, int]:
        """Return the live pair (i, j), i < j, with the smallest tree length."""
        n = self.n
        square = self.mat.reshape(n, n)
        d = self.d_to_all_others
        f = float(self.remaining)

        d_row = d[:, np.newaxis]
        d_col = d[np.newaxis, :]
        total = (d_row + d_col + (f - 2.0) * square + 2.0 * (self.sum_of_branches - d_row - d_col))
        total /= (2.0 * (f - 2.0))

        live = np.array([vertex is not None for vertex in self.connector])
        candidates = np.triu(live[:, np.newaxis] & live[np.newaxis, :], k=1)
        total = np.where(candidates, total, np.inf)

        # Scan order: larger index ascending, then smaller index ascending
        col, row = divmod(int(np.argmin(total.T)), n)
        return row, col

    def _merge(self, tree: GuideTree, mini: int, minj: int) -> None:
        """Join nodes mini and minj; mini becomes the merged node."""
        n = self.n
        mat = self.mat
        f = float(self.remaining)

        dmin = mat[_index(mini, minj, n)]
        d_i = self.d_to_all_others[mini] / (f - 2.0)
        d_j = self.d_to_all_others[minj] / (f - 2.0)
        i_branch = (dmin + d_i - d_j) / 2.0
        j_branch = dmin - i_branch
        i_branch -= self.av[mini]
        j_branch -= self.av[minj]

        i_branch = max(i_branch, 0.0)
        j_branch = max(j_branch, 0.0)

        internal = tree.add_vertex()
        tree.add_edge(internal, self.connector[mini], round_to_significant_figures(i_branch))
        tree.add_edge(internal, self.connector[minj], round_to_significant_figures(j_branch))

        self.av[mini] = max(dmin, 0.0) / 2.0

        self.remaining -= 1
        self.connector[minj] = None
        self.connector[mini] = internal
        self.joins.append((mini, minj))

        new_sum = 0.0
        for j in range(n):
            if self.connector[j] is not None and j != mini:
                new_value = (mat[_index(mini, j, n)] + mat[_index(minj, j, n)]) / 2.0
                self.d_to_all_others[j] -= new_value
                new_sum += new_value
                mat[_index(mini, j, n)] = new_value
                mat[_index(j, mini, n)] = new_value
                self.sum_of_branches -= new_value
            else:
                self.sum_of_branches -= mat[_index(j, minj, n)]

            mat[_index(j, minj, n)] = 0.0
            mat[_index(minj, j, n)] = 0.0

        self.d_to_all_others[mini] = new_sum

    def _join_last_three(self, tree: GuideTree) -> None:
        n = self.n
        mat = self.mat
        a, b, c = [i for i in range(n) if self.connector[i] is not None]

        ab = mat[_index(a, b, n)]
        ac = mat[_index(a, c, n)]
        bc = mat[_index(b, c, n)]
        branch = [
            (ab + ac - bc) / 2.0 - self.av[a],
            (bc + ab - ac) / 2.0 - self.av[b],
            (bc + ac - ab) / 2.0 - self.av[c],
        ]
        branch = [max(value, 0.0) for value in branch]

        internal = tree.add_vertex()
        tree.add_edge(internal, self.connector[a], round_to_significant_figures(branch[0]))
        tree.add_edge(internal, self.connector[b], round_to_significant_figures(branch[1]))

        root = tree.add_vertex()
        half = round_to_significant_figures(branch[2] / 2.0)
        tree.add_edge(root, self.connector[c], half)
        tree.add_edge(root, internal, half)
        tree.root = root


def neighbour_joining(distances: Union[np.ndarray, Sequence],
                      logger: Optional[logging.Logger] = None) -> GuideTree:
    """Build a neighbour-joining guide tree from a distance matrix."""
    return NeighbourJoiningTreeBuilder(distances, logger=logger).build()
