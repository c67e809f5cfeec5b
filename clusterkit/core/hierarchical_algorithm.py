"""
Hierarchical Clustering Algorithm Implementation.

Hierarchical clustering is ideal for:
- Building cluster trees (dendrograms) that can be cut at any level
- Small to medium datasets (all-pairs distances are kept in memory)
- Exploring how many clusters the data supports

Agglomerative runs start from singletons and merge the closest pair of
clusters under one of five linkage criteria. Divisive runs start from one
cluster and repeatedly split the most dispersed cluster with 2-means.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from clusterkit.core.base_clustering import (
    BaseClusteringAlgorithm,
    ClusteringConfig,
    ClusteringResult,
)
from clusterkit.core.dendrogram import (
    Dendrogram,
    MergeRecord,
    build_dendrogram,
    cophenetic_correlation,
    find_optimal_clusters,
    labels_from_merges,
    renumber,
)
from clusterkit.core.points import PointSet
from clusterkit.schemas.data_models import (
    ClusteringMethod,
    HierarchicalOptions,
    LinkageCriterion,
)
from clusterkit.utils.error_handling import ParameterValidationError

logger = logging.getLogger(__name__)


@dataclass
class ClusterNode:
    """
    Arena entry for one cluster.

    Agglomerative leaves are ids 0..N-1 and each merge appends a node whose
    members are found by walking its children. Divisive nodes keep their
    member ids directly.
    """

    id: int
    centroid: np.ndarray
    size: int
    level: int = 0
    merge_distance: float = 0.0
    children: Optional[Tuple[int, int]] = None
    members: Optional[np.ndarray] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "size": self.size,
            "level": self.level,
            "merge_distance": self.merge_distance,
            "children": list(self.children) if self.children is not None else None,
            "centroid": np.asarray(self.centroid, dtype=float).tolist(),
        }


@dataclass(frozen=True)
class SplitRecord:
    """One divisive split."""

    step: int
    source_cluster_id: int
    result_cluster_ids: Tuple[int, int]
    variance: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "source_cluster_id": self.source_cluster_id,
            "result_cluster_ids": list(self.result_cluster_ids),
            "variance": self.variance,
        }


class ClusterArena:
    """Append-only store of ClusterNodes indexed by id."""

    def __init__(self):
        self.nodes: List[ClusterNode] = []

    def __len__(self) -> int:
        return len(self.nodes)

    def __getitem__(self, node_id: int) -> ClusterNode:
        return self.nodes[node_id]

    def add(self, **kwargs: Any) -> ClusterNode:
        node = ClusterNode(id=len(self.nodes), **kwargs)
        self.nodes.append(node)
        return node

    def members(self, node_id: int) -> np.ndarray:
        """Point ids of a node, derived from its subtree when not stored."""
        collected = []
        stack = [node_id]
        while stack:
            node = self.nodes[stack.pop()]
            if node.members is not None:
                collected.append(node.members)
            elif node.children is not None:
                stack.extend(reversed(node.children))
        if not collected:
            return np.array([], dtype=int)
        return np.sort(np.concatenate(collected))


class HierarchicalResult(ClusteringResult):
    """Results from hierarchical clustering."""

    def __init__(
        self,
        cluster_labels: np.ndarray,
        n_clusters: int,
        quality_metrics: Dict[str, float],
        centroids: Optional[np.ndarray],
        method: str,
        linkage: Optional[str],
        history: List[Any],
        arena: ClusterArena,
        cluster_node_ids: List[int],
        dendrogram: Optional[Dendrogram],
        cluster_stats: List[Dict[str, Any]],
        optimal_clusters: Optional[Dict[str, Any]],
        stats: Dict[str, Any],
        algorithm: str = "hierarchical",
    ):
        super().__init__(
            cluster_labels=cluster_labels,
            n_clusters=n_clusters,
            outlier_count=0,
            quality_metrics=quality_metrics,
            centroids=centroids,
            algorithm=algorithm,
        )
        self.method = method
        self.linkage = linkage
        self.history = history
        self.arena = arena
        self.cluster_node_ids = cluster_node_ids
        self.dendrogram = dendrogram
        self.cluster_stats = cluster_stats
        self.optimal_clusters = optimal_clusters
        self.stats = stats

    @property
    def merge_history(self) -> List[MergeRecord]:
        return self.history if self.method == ClusteringMethod.AGGLOMERATIVE.value else []

    @property
    def cluster_nodes(self) -> List[ClusterNode]:
        """Arena nodes of the final clusters, in cluster id order."""
        return [self.arena[node_id] for node_id in self.cluster_node_ids]

    @property
    def split_history(self) -> List[SplitRecord]:
        return self.history if self.method == ClusteringMethod.DIVISIVE.value else []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "method": self.method,
            "linkage": self.linkage,
            "history": [record.to_dict() for record in self.history],
            "cluster_nodes": [node.to_dict() for node in self.cluster_nodes],
            "dendrogram": self.dendrogram.to_dict() if self.dendrogram is not None else None,
            "cluster_stats": self.cluster_stats,
            "optimal_clusters": self.optimal_clusters,
            "stats": self.stats,
        })
        return data


class HierarchicalAlgorithm(BaseClusteringAlgorithm):
    """
    Agglomerative / divisive hierarchical clustering.

    Best for: small datasets where the cluster hierarchy matters
    Strengths: deterministic, any linkage, dendrogram for re-cutting
    Weaknesses: O(N^2) memory, O(N^2) work per merge in the worst case
    """

    options_model = HierarchicalOptions

    def __init__(self, config: ClusteringConfig):
        """
        Initialize hierarchical algorithm.

        Args:
            config: Clustering configuration
        """
        super().__init__(config)
        self.method = ClusteringMethod(self.options.method)
        self.linkage = LinkageCriterion(self.options.linkage)

        logger.info(
            f"Initialized Hierarchical: method={self.method.value}, "
            f"linkage={self.linkage.value}, metric={self.distance.metric.value}, "
            f"num_clusters={self.options.num_clusters}, "
            f"distance_threshold={self.options.distance_threshold}"
        )

    # =========================================================================
    # Entry point
    # =========================================================================

    def _run(self, points: PointSet) -> HierarchicalResult:
        X = points.features
        n = points.n_points
        target = self._resolve_num_clusters(n)

        logger.info(f"Starting {self.method.value} clustering on {n} points (target={target})")

        dendrogram = None
        if self.method == ClusteringMethod.AGGLOMERATIVE:
            arena, history, all_merges, node_ids = self._agglomerative(X, target)
            labels = labels_from_merges(n, history)
            if self.options.generate_dendrogram:
                dendrogram = build_dendrogram(all_merges, n, labels)
        else:
            arena, history, node_ids = self._divisive(X, target)
            raw = np.empty(n, dtype=int)
            for cluster_index, node_id in enumerate(node_ids):
                raw[arena.members(node_id)] = cluster_index
            labels = renumber(raw.tolist())

        # Order final clusters by their label
        node_ids = sorted(node_ids, key=lambda node_id: labels[arena.members(node_id)[0]])
        n_clusters = len(node_ids)
        logger.info(f"Hierarchical created {n_clusters} clusters in {len(history)} steps")

        cluster_stats = self._cluster_statistics(X, labels, n_clusters)
        centroids = np.array([stat["centroid"] for stat in cluster_stats]) if cluster_stats else None

        cophenetic = 0.0
        if dendrogram is not None and self.options.calculate_cophenetic_correlation:
            cophenetic = cophenetic_correlation(dendrogram, self.distance.pairwise(X))

        optimal = None
        if self.method == ClusteringMethod.AGGLOMERATIVE and self.options.num_clusters is None:
            curve = all_merges if dendrogram is not None else history
            optimal = find_optimal_clusters([m.distance for m in curve], n)

        distances = [r.distance if isinstance(r, MergeRecord) else r.variance for r in history]
        stats = {
            "total_points": n,
            "final_clusters": n_clusters,
            "merge_steps": len(history),
            "max_distance": float(max(distances, default=0.0)),
            "cophenetic_correlation": cophenetic,
        }

        return HierarchicalResult(
            cluster_labels=labels,
            n_clusters=n_clusters,
            quality_metrics=self._calculate_quality_metrics(X, labels),
            centroids=centroids,
            method=self.method.value,
            linkage=self.linkage.value if self.method == ClusteringMethod.AGGLOMERATIVE else None,
            history=history,
            arena=arena,
            cluster_node_ids=node_ids,
            dendrogram=dendrogram,
            cluster_stats=cluster_stats,
            optimal_clusters=optimal,
            stats=stats,
        )

    def _resolve_num_clusters(self, n: int) -> int:
        """
        Target cluster count.

        Raises:
            ParameterValidationError: If num_clusters exceeds the point count
        """
        if self.options.num_clusters is not None:
            if self.options.num_clusters > n:
                raise ParameterValidationError(
                    f"num_clusters ({self.options.num_clusters}) exceeds number of points ({n})",
                    details={"num_clusters": self.options.num_clusters, "n_points": n},
                )
            return self.options.num_clusters

        if self.options.distance_threshold is not None:
            # The threshold alone decides; the count only bounds the loop
            return 1 if self.method == ClusteringMethod.AGGLOMERATIVE else n

        auto = max(2, min(10, int(np.floor(np.sqrt(n / 2)))))
        return min(n, auto)

    # =========================================================================
    # Agglomerative
    # =========================================================================

    def _initial_linkage_matrix(self, X: np.ndarray) -> np.ndarray:
        if self.linkage == LinkageCriterion.WARD:
            Xw = self.distance.transform(X)
            sq_norms = np.einsum("ij,ij->i", Xw, Xw)
            squared = sq_norms[:, np.newaxis] + sq_norms[np.newaxis, :] - 2.0 * (Xw @ Xw.T)
            M = 0.5 * np.maximum(squared, 0.0)
        else:
            M = self.distance.pairwise(X).copy()
        np.fill_diagonal(M, np.inf)
        return M

    def _linkage_update(
        self,
        M: np.ndarray,
        a: int,
        b: int,
        na: float,
        nb: float,
        sizes: np.ndarray,
        centroids: np.ndarray,
        active: np.ndarray,
    ) -> np.ndarray:
        """
        Distances from the cluster merged into slot a to every slot.

        na and nb are the sizes of the two clusters before the merge.
        """
        row_a, row_b = M[a], M[b]

        if self.linkage == LinkageCriterion.SINGLE:
            new = np.minimum(row_a, row_b)
        elif self.linkage == LinkageCriterion.COMPLETE:
            new = np.maximum(row_a, row_b)
        elif self.linkage == LinkageCriterion.AVERAGE:
            new = (na * row_a + nb * row_b) / (na + nb)
        elif self.linkage == LinkageCriterion.WARD:
            n_new = na + nb
            cw = self.distance.transform(centroids)
            diff = cw - cw[a]
            new = (sizes * n_new / (sizes + n_new)) * np.einsum("ij,ij->i", diff, diff)
        else:
            new = self.distance.to_point(centroids, centroids[a])

        new = np.where(active, new, np.inf)
        new[a] = np.inf
        new[b] = np.inf
        return new

    def _agglomerative(
        self, X: np.ndarray, target: int
    ) -> Tuple[ClusterArena, List[MergeRecord], List[MergeRecord], List[int]]:
        """
        Merge loop.

        Returns:
            (arena, merges up to the stopping point, all merges performed,
            node ids of the clusters at the stopping point)
        """
        n = len(X)
        threshold = self.options.distance_threshold
        keep_going = self.options.generate_dendrogram and self.options.compute_full_tree

        arena = ClusterArena()
        for i in range(n):
            arena.add(centroid=X[i], size=1, members=np.array([i]))

        M = self._initial_linkage_matrix(X)
        row_min = M.min(axis=1) if n > 1 else np.full(n, np.inf)
        sizes = np.ones(n)
        centroids = X.astype(float, copy=True)
        active = np.ones(n, dtype=bool)
        slot_node = np.arange(n)
        # Position key in the active list: survivors keep input order and
        # every merged cluster goes to the end.
        order = np.arange(n, dtype=float)

        merges: List[MergeRecord] = []
        stop_step: Optional[int] = None
        stop_nodes: List[int] = []
        n_active = n
        tracker = self._tracker("agglomerative", max(n - 1, 0))

        while n_active > 1:
            best = float(row_min.min())
            if stop_step is None and (
                n_active <= target or (threshold is not None and best > threshold)
            ):
                stop_step = len(merges)
                stop_nodes = self._active_nodes(slot_node, active, order)
                if not keep_going:
                    break

            tracker.tick()
            a, b = self._closest_pair(M, row_min, best, order)

            na, nb = sizes[a], sizes[b]
            merged_centroid = (na * centroids[a] + nb * centroids[b]) / (na + nb)
            node_a, node_b = arena[slot_node[a]], arena[slot_node[b]]
            node = arena.add(
                centroid=merged_centroid,
                size=int(na + nb),
                level=max(node_a.level, node_b.level) + 1,
                merge_distance=best,
                children=(node_a.id, node_b.id),
            )
            merges.append(MergeRecord(
                step=len(merges),
                source_cluster_ids=(node_a.id, node_b.id),
                result_cluster_id=node.id,
                distance=best,
                result_size=node.size,
            ))

            # Slot a takes the merged cluster, slot b is retired
            old_col_a, old_col_b = M[:, a].copy(), M[:, b].copy()
            active[b] = False
            centroids[a] = merged_centroid
            sizes[a] = na + nb
            new_row = self._linkage_update(M, a, b, na, nb, sizes, centroids, active)

            M[a, :] = new_row
            M[:, a] = new_row
            M[b, :] = np.inf
            M[:, b] = np.inf
            slot_node[a] = node.id
            order[a] = n + len(merges)
            n_active -= 1

            stale = active & ((old_col_a == row_min) | (old_col_b == row_min))
            row_min = np.minimum(row_min, new_row)
            row_min[b] = np.inf
            stale[a] = True
            for k in np.flatnonzero(stale):
                row_min[k] = M[k].min()

        tracker.finish()

        if stop_step is None:
            stop_step = len(merges)
            stop_nodes = self._active_nodes(slot_node, active, order)

        logger.debug(
            f"Agglomerative stopped after {stop_step} merges "
            f"({len(merges)} merges performed in total)"
        )
        return arena, merges[:stop_step], merges, stop_nodes

    @staticmethod
    def _closest_pair(
        M: np.ndarray, row_min: np.ndarray, best: float, order: np.ndarray
    ) -> Tuple[int, int]:
        """
        Minimal pair with the lowest (i, j) active-list positions on ties.

        Returns slots (a, b) with a earlier in the active list than b.
        """
        best_key = None
        best_pair = (0, 0)
        for r in np.flatnonzero(row_min == best):
            for c in np.flatnonzero(M[r] == best):
                i, j = (r, c) if order[r] < order[c] else (c, r)
                key = (order[i], order[j])
                if best_key is None or key < best_key:
                    best_key = key
                    best_pair = (int(i), int(j))
        return best_pair

    @staticmethod
    def _active_nodes(slot_node: np.ndarray, active: np.ndarray, order: np.ndarray) -> List[int]:
        slots = np.flatnonzero(active)
        slots = slots[np.argsort(order[slots], kind="stable")]
        return [int(slot_node[s]) for s in slots]

    # =========================================================================
    # Divisive
    # =========================================================================

    def _divisive(self, X: np.ndarray, target: int) -> Tuple[ClusterArena, List[SplitRecord], List[int]]:
        n = len(X)
        threshold = self.options.distance_threshold
        Xw = self.distance.transform(X)

        arena = ClusterArena()
        root = arena.add(centroid=X.mean(axis=0), size=n, members=np.arange(n))
        active = [root.id]
        splits: List[SplitRecord] = []
        tracker = self._tracker("divisive", max(target - 1, 0))

        while len(active) < target:
            position, variance = self._most_dispersed(arena, active, Xw)
            if position is None:
                break
            if threshold is not None and variance <= threshold:
                break

            tracker.tick()
            parent = arena[active[position]]
            left_members, right_members = self._split(X, parent.members)
            left = arena.add(
                centroid=X[left_members].mean(axis=0),
                size=len(left_members),
                level=parent.level + 1,
                members=left_members,
            )
            right = arena.add(
                centroid=X[right_members].mean(axis=0),
                size=len(right_members),
                level=parent.level + 1,
                members=right_members,
            )
            parent.children = (left.id, right.id)
            active[position:position + 1] = [left.id, right.id]
            splits.append(SplitRecord(
                step=len(splits),
                source_cluster_id=parent.id,
                result_cluster_ids=(left.id, right.id),
                variance=variance,
            ))

        tracker.finish()
        return arena, splits, active

    @staticmethod
    def _most_dispersed(
        arena: ClusterArena, active: List[int], Xw: np.ndarray
    ) -> Tuple[Optional[int], float]:
        """Active position of the splittable cluster with the largest mean squared deviation."""
        best_position, best_variance = None, -1.0
        for position, node_id in enumerate(active):
            node = arena[node_id]
            if node.size <= 1:
                continue
            pts = Xw[node.members]
            variance = float(np.mean(np.sum((pts - pts.mean(axis=0)) ** 2, axis=1)))
            if variance > best_variance:
                best_position, best_variance = position, variance
        return best_position, best_variance

    def _split(self, X: np.ndarray, members: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        2-means split seeded with the first and the middle member.

        A point goes left only when strictly closer to the left centroid.
        If one side ends up empty, the last point of the other side moves
        across.
        """
        pts = X[members]
        seeds = np.array([pts[0], pts[len(pts) // 2]], dtype=float)
        assignments = None

        for _ in range(self.options.max_split_iterations):
            d_left = self.distance.to_point(pts, seeds[0])
            d_right = self.distance.to_point(pts, seeds[1])
            new_assignments = np.where(d_left < d_right, 0, 1)
            if assignments is not None and np.array_equal(assignments, new_assignments):
                break
            assignments = new_assignments
            for side in (0, 1):
                side_mask = assignments == side
                if side_mask.any():
                    seeds[side] = pts[side_mask].mean(axis=0)

        left = list(members[assignments == 0])
        right = list(members[assignments == 1])
        if not left:
            left.append(right.pop())
        elif not right:
            right.append(left.pop())

        return np.array(left, dtype=int), np.array(right, dtype=int)

    # =========================================================================
    # Statistics
    # =========================================================================

    def _cluster_statistics(self, X: np.ndarray, labels: np.ndarray, n_clusters: int) -> List[Dict[str, Any]]:
        stats = []
        for cluster_id in range(n_clusters):
            pts = X[labels == cluster_id]
            centroid = pts.mean(axis=0)
            variance = float(np.mean(np.sum((pts - centroid) ** 2, axis=1)))
            diameter = float(self.distance.pairwise(pts).max()) if len(pts) > 1 else 0.0
            stats.append({
                "id": cluster_id,
                "size": int(len(pts)),
                "centroid": centroid.tolist(),
                "variance": variance,
                "diameter": diameter,
            })
        return stats
