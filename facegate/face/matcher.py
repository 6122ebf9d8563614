from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import torch

from facegate.config import DEFAULT_MATCH_THRESHOLD, UNKNOWN_LABEL
from facegate.face.gallery import ReferenceSet
from facegate.utils.log import get_logger
from facegate.utils.math import euclidean_distances

logger = get_logger(__name__)


@dataclass
class MatcherConfig:
    # Maximum Euclidean distance accepted as a known identity.
    threshold: float = DEFAULT_MATCH_THRESHOLD
    unknown_label: str = UNKNOWN_LABEL
    # "auto" uses torch/CUDA when available, "cpu" always uses numpy.
    device: str = "auto"

    def __post_init__(self) -> None:
        if float(self.threshold) < 0:
            raise ValueError(f"threshold must be >= 0, got {self.threshold}")


@dataclass(frozen=True)
class MatchResult:
    identity_id: str
    distance: float
    accepted: bool
    threshold: float


class EuclideanMatcher:
    """Nearest-descriptor matcher over a fixed ReferenceSet.

    The reference set is flattened once into an (N, D) matrix plus a row -> identity
    index, so a query is one vectorized distance computation and one argmin. Rows
    keep ReferenceSet iteration order, which makes ties resolve to the first
    identity/descriptor in that order.
    """

    def __init__(self, reference_set: ReferenceSet, config: Optional[MatcherConfig] = None):
        if not reference_set:
            raise ValueError("cannot build a matcher from an empty reference set")

        self.config = config or MatcherConfig()
        self.reference_set = reference_set

        names: List[str] = []
        rows: List[np.ndarray] = []
        ids: List[int] = []
        for idx, entry in enumerate(reference_set):
            names.append(entry.identity_id)
            for d in entry.descriptors:
                rows.append(d)
                ids.append(idx)

        self._names = names
        self._matrix = np.ascontiguousarray(np.stack(rows, axis=0).astype(np.float32, copy=False))
        self._matrix.setflags(write=False)
        self._row_ids = np.asarray(ids, dtype=np.int64)

        # Lazily built CUDA copy of the matrix.
        self._matrix_t = None
        self._device: Optional[str] = None

    @property
    def threshold(self) -> float:
        return float(self.config.threshold)

    def _auto_device(self) -> str:
        if str(self.config.device).lower() == "cpu":
            return "cpu"
        try:
            return "cuda" if torch.cuda.is_available() else "cpu"
        except Exception:
            return "cpu"

    def _ensure_torch_matrix(self) -> bool:
        device = self._auto_device()
        if device != "cuda":
            return False
        if self._matrix_t is not None and self._device == device:
            return True
        try:
            self._matrix_t = torch.from_numpy(np.array(self._matrix, dtype=np.float64)).to(device)
            self._device = device
            return True
        except Exception as e:
            logger.debug(f"CUDA matcher index unavailable, using numpy: {e}")
            self._matrix_t = None
            self._device = None
            return False

    def _distances(self, query: np.ndarray) -> np.ndarray:
        if self._ensure_torch_matrix():
            try:
                q_t = torch.from_numpy(query.astype(np.float64).reshape(1, -1)).to(self._device)
                dist_t = torch.cdist(q_t, self._matrix_t).reshape(-1)
                return dist_t.detach().cpu().numpy()
            except Exception as e:
                logger.debug(f"CUDA distance failed, falling back to numpy: {e}")
        return euclidean_distances(self._matrix, query)

    def match(self, descriptor: np.ndarray) -> MatchResult:
        """Return the closest identity, or the unknown label when the minimum exceeds the threshold."""
        q = np.asarray(descriptor, dtype=np.float32).reshape(-1)
        dists = self._distances(q)
        # NaN/inf distances (e.g. a NaN descriptor) never count as a match
        dists = np.where(np.isfinite(dists), dists, np.inf)

        best_row = int(np.argmin(dists))
        thr = self.threshold
        if not np.isfinite(dists[best_row]):
            return MatchResult(
                identity_id=self.config.unknown_label, distance=float("inf"), accepted=False, threshold=thr
            )

        best_dist = max(0.0, float(dists[best_row]))
        accepted = best_dist <= thr
        identity = self._names[int(self._row_ids[best_row])] if accepted else self.config.unknown_label
        return MatchResult(identity_id=identity, distance=best_dist, accepted=accepted, threshold=thr)

    def top_k(self, descriptor: np.ndarray, k: int = 5) -> List[Tuple[str, float]]:
        """Per-identity best distances, closest first (for threshold tuning)."""
        q = np.asarray(descriptor, dtype=np.float32).reshape(-1)
        dists = self._distances(q)
        dists = np.where(np.isfinite(dists), dists, np.inf)
        best_per_identity = np.full((len(self._names),), np.inf, dtype=np.float64)
        np.minimum.at(best_per_identity, self._row_ids, dists.astype(np.float64, copy=False))
        order = np.argsort(best_per_identity, kind="stable")[: int(max(1, k))]
        return [(self._names[int(i)], float(best_per_identity[int(i)])) for i in order]


class MatcherSlot:
    """Single reference cell holding the current matcher (or nothing).

    `replace` swaps in a fully built matcher in one assignment, so an in-flight
    recognition keeps using whichever matcher it read and never sees a partial set.
    """

    def __init__(self, config: Optional[MatcherConfig] = None):
        self.config = config or MatcherConfig()
        self._matcher: Optional[EuclideanMatcher] = None

    @property
    def current(self) -> Optional[EuclideanMatcher]:
        return self._matcher

    @property
    def ready(self) -> bool:
        return self._matcher is not None

    def replace(self, reference_set: ReferenceSet) -> Optional[EuclideanMatcher]:
        """Build a matcher for `reference_set`; an empty set disables recognition."""
        if not reference_set:
            self._matcher = None
            logger.warning("参考人脸集合为空，识别功能暂不可用")
            return None
        matcher = EuclideanMatcher(reference_set, self.config)
        self._matcher = matcher
        logger.info(
            f"匹配器已更新: {len(reference_set)} 个身份, {reference_set.descriptor_count} 个特征, "
            f"阈值 {matcher.threshold:.2f}"
        )
        return matcher
