"""
Dendrogram construction and cutting.

A dendrogram is built once from the ordered merge history of an
agglomerative run: one leaf per point, one internal node per merge whose
height is the merge distance. Cutting never re-clusters; it only reads
the tree (by height) or replays a prefix of the merges (by count).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from clusterkit.utils.error_handling import (
    DendrogramUnavailableError,
    ParameterValidationError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeRecord:
    """One agglomerative merge."""

    step: int
    source_cluster_ids: Tuple[int, int]
    result_cluster_id: int
    distance: float
    result_size: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "source_cluster_ids": list(self.source_cluster_ids),
            "result_cluster_id": self.result_cluster_id,
            "distance": self.distance,
            "result_size": self.result_size,
        }


@dataclass(frozen=True)
class DendrogramNode:
    """
    Node of the merge tree.

    Leaves use the point id as node_id. cluster_id is the flat cluster
    label of the run when the whole subtree falls in one cluster.
    """

    node_id: int
    is_leaf: bool
    height: float
    size: int
    children: Tuple[int, ...] = ()
    cluster_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "is_leaf": self.is_leaf,
            "height": self.height,
            "size": self.size,
            "children": list(self.children),
            "cluster_id": self.cluster_id,
        }


@dataclass(frozen=True)
class Dendrogram:
    """Immutable merge tree (a forest when the merge history is partial)."""

    n_leaves: int
    nodes: Dict[int, DendrogramNode]
    roots: Tuple[int, ...]
    merges: Tuple[MergeRecord, ...] = field(repr=False)

    @property
    def root(self) -> Optional[DendrogramNode]:
        """The single root, or None for a forest."""
        if len(self.roots) != 1:
            return None
        return self.nodes[self.roots[0]]

    @property
    def max_height(self) -> float:
        return max((m.distance for m in self.merges), default=0.0)

    def leaves(self, node_id: int) -> List[int]:
        """Point ids under a node, left to right."""
        result = []
        stack = [node_id]
        while stack:
            node = self.nodes[stack.pop()]
            if node.is_leaf:
                result.append(node.node_id)
            else:
                stack.extend(reversed(node.children))
        return result

    def to_dict(self) -> Dict[str, Any]:
        """Nested representation rooted at each tree of the forest."""

        def expand(node_id: int) -> Dict[str, Any]:
            node = self.nodes[node_id]
            data = node.to_dict()
            data["children"] = [expand(child) for child in node.children]
            return data

        return {
            "n_leaves": self.n_leaves,
            "roots": [expand(root) for root in self.roots],
        }


# =============================================================================
# Construction
# =============================================================================


def build_dendrogram(
    merges: Sequence[MergeRecord],
    n_points: int,
    labels: Optional[np.ndarray] = None,
) -> Dendrogram:
    """
    Build a dendrogram by replaying the merge history.

    Args:
        merges: Merge records in execution order
        n_points: Number of leaves
        labels: Optional flat labels used to tag nodes with cluster_id

    Returns:
        Dendrogram whose roots are the nodes never merged further
    """
    nodes: Dict[int, DendrogramNode] = {}
    for point_id in range(n_points):
        cluster_id = int(labels[point_id]) if labels is not None else None
        nodes[point_id] = DendrogramNode(
            node_id=point_id, is_leaf=True, height=0.0, size=1, cluster_id=cluster_id
        )

    open_nodes = dict.fromkeys(range(n_points))
    for merge in merges:
        left, right = merge.source_cluster_ids
        cluster_id = None
        if labels is not None and nodes[left].cluster_id == nodes[right].cluster_id:
            cluster_id = nodes[left].cluster_id
        nodes[merge.result_cluster_id] = DendrogramNode(
            node_id=merge.result_cluster_id,
            is_leaf=False,
            height=float(merge.distance),
            size=merge.result_size,
            children=(left, right),
            cluster_id=cluster_id,
        )
        open_nodes.pop(left, None)
        open_nodes.pop(right, None)
        open_nodes[merge.result_cluster_id] = None

    roots = tuple(open_nodes)
    logger.debug(f"Built dendrogram with {len(nodes)} nodes and {len(roots)} root(s)")
    return Dendrogram(n_leaves=n_points, nodes=nodes, roots=roots, merges=tuple(merges))


def labels_from_merges(n_points: int, merges: Sequence[MergeRecord]) -> np.ndarray:
    """
    Flat labels after applying the given merges to singleton clusters.

    Labels are numbered by first appearance in point order.
    """
    parent = list(range(n_points))
    owner: Dict[int, int] = {point_id: point_id for point_id in range(n_points)}

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for merge in merges:
        left, right = (owner.pop(node_id) for node_id in merge.source_cluster_ids)
        root_left, root_right = find(left), find(right)
        parent[root_right] = root_left
        owner[merge.result_cluster_id] = root_left

    return renumber([find(i) for i in range(n_points)])


def renumber(raw_labels: Sequence[int]) -> np.ndarray:
    """Relabel clusters 0..k-1 by first appearance; -1 stays -1."""
    mapping: Dict[int, int] = {}
    labels = np.empty(len(raw_labels), dtype=int)
    for i, raw in enumerate(raw_labels):
        if raw == -1:
            labels[i] = -1
            continue
        if raw not in mapping:
            mapping[raw] = len(mapping)
        labels[i] = mapping[raw]
    return labels


# =============================================================================
# Cutting
# =============================================================================


def _resolve(dendrogram: Any) -> Dendrogram:
    tree = getattr(dendrogram, "dendrogram", dendrogram)
    if tree is None:
        raise DendrogramUnavailableError(
            "No dendrogram available (divisive run or dendrogram generation disabled)"
        )
    if not isinstance(tree, Dendrogram):
        raise ParameterValidationError(
            f"Expected a Dendrogram, got {type(tree).__name__}",
        )
    return tree


def cut_dendrogram(
    dendrogram: Any,
    height: Optional[float] = None,
    num_clusters: Optional[int] = None,
) -> np.ndarray:
    """
    Flat clustering read off a dendrogram.

    Exactly one of height / num_clusters must be given.

    Args:
        dendrogram: Dendrogram, or a result carrying one
        height: Every subtree whose height is <= height becomes one cluster
        num_clusters: Replay merges until this many clusters remain

    Returns:
        Labels numbered by first appearance in point order

    Raises:
        DendrogramUnavailableError: If there is no dendrogram
        ParameterValidationError: On a missing, duplicate or unreachable target
    """
    tree = _resolve(dendrogram)

    if (height is None) == (num_clusters is None):
        raise ParameterValidationError(
            "Specify exactly one of height or num_clusters",
            details={"height": height, "num_clusters": num_clusters},
        )

    if num_clusters is not None:
        return _cut_by_count(tree, num_clusters)
    return _cut_by_height(tree, float(height))


def _cut_by_height(tree: Dendrogram, height: float) -> np.ndarray:
    raw = np.empty(tree.n_leaves, dtype=int)
    cluster = 0
    stack = list(reversed(tree.roots))
    while stack:
        node = tree.nodes[stack.pop()]
        if node.is_leaf or node.height <= height:
            raw[tree.leaves(node.node_id)] = cluster
            cluster += 1
        else:
            stack.extend(reversed(node.children))
    return renumber(raw.tolist())


def _cut_by_count(tree: Dendrogram, num_clusters: int) -> np.ndarray:
    n = tree.n_leaves
    if num_clusters < 1 or num_clusters > n:
        raise ParameterValidationError(
            f"num_clusters must be between 1 and {n}, got {num_clusters}",
            details={"num_clusters": num_clusters, "n_points": n},
        )
    n_merges = n - num_clusters
    if n_merges > len(tree.merges):
        raise ParameterValidationError(
            f"Dendrogram only reaches {n - len(tree.merges)} clusters",
            details={"num_clusters": num_clusters, "min_clusters": n - len(tree.merges)},
        )
    return labels_from_merges(n, tree.merges[:n_merges])


# =============================================================================
# Analysis
# =============================================================================


def cophenetic_correlation(tree: Dendrogram, distances: np.ndarray) -> float:
    """
    Pearson correlation between original and cophenetic distances.

    Point pairs in different trees of a forest are ignored. Returns 0 when
    the correlation is undefined.
    """
    n = tree.n_leaves
    if n < 3 or not tree.merges:
        return 0.0

    cophenetic = np.full((n, n), np.nan)
    members: Dict[int, List[int]] = {i: [i] for i in range(n)}
    for merge in tree.merges:
        left, right = (members.pop(node_id) for node_id in merge.source_cluster_ids)
        cophenetic[np.ix_(left, right)] = merge.distance
        cophenetic[np.ix_(right, left)] = merge.distance
        members[merge.result_cluster_id] = left + right

    upper = np.triu_indices(n, k=1)
    coph = cophenetic[upper]
    orig = np.asarray(distances)[upper]
    defined = ~np.isnan(coph)
    if defined.sum() < 2:
        return 0.0

    coph, orig = coph[defined], orig[defined]
    if np.std(coph) == 0 or np.std(orig) == 0:
        return 0.0

    corr = float(np.corrcoef(orig, coph)[0, 1])
    return corr if np.isfinite(corr) else 0.0


def find_optimal_clusters(distances: Sequence[float], n_points: int) -> Optional[Dict[str, Any]]:
    """
    Elbow of the merge-distance curve.

    The elbow is the step after the largest absolute second difference;
    the suggestion is the cluster count at that step, clamped to [2, 10].
    """
    if len(distances) == 0:
        return None

    values = np.asarray(distances, dtype=float)
    elbow = int(np.argmax(np.abs(np.diff(values, n=2)))) + 1 if len(values) >= 3 else 0
    return {
        "optimal_clusters": max(2, min(n_points - elbow, 10)),
        "elbow_point": elbow,
        "distances": values.tolist(),
    }
