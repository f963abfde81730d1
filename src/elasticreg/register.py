"""
Elastic ICP registration driver
소스 메쉬를 대상 메쉬에 비강체(elastic) 정합하는 반복 드라이버

Based on: B. Amberg, "Editing faces in videos", University of Basel, 2011.

    INIT -> ALIGNING (landmarks only) -> ITERATING -> CONVERGED | MAX_ITER

Each iteration matches the working mesh to the target surface, solves the
elastic deformation on the reference mesh, optionally smooths the result and
measures the mean squared vertex displacement against the previous step.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import Callable, List, Optional, Sequence, Tuple, Union
import warnings

import numpy as np

from .affine_frames import AffineFrameBuilder, SmoothnessOperator
from .alignment_utils import RigidICPSpec, rigid_icp, rigid_landmark_alignment
from .correspondence import CorrespondenceFinder
from .deformation import elastic_deform
from .errors import ConvergenceNotReached, ParameterLengthMismatch
from .mesh_loader import MeshData
from .mesh_ops import clean_mesh, smooth_mesh, transform_mesh, transform_points, validate_mesh_arrays
from .runtime_defaults import DEFAULTS

_LOGGER = logging.getLogger(__name__)

UNBOUNDED_ITERATIONS = 10 ** 10

Weights = Union[float, Sequence[float], np.ndarray]


class RegistrationState(str, Enum):
    INIT = "init"
    ALIGNING = "aligning"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITER = "max_iter"


@dataclass(frozen=True)
class RegistrationParams:
    """
    정합 파라미터

    Attributes:
        k: 법선 slack 가중치 (스칼라 또는 길이 `iterations` 벡터, 정수로 반올림)
        lam: 대응점 가중치 lambda (스칼라 또는 길이 `iterations` 벡터)
        iterations: 최대 반복 횟수 (< 1 이면 사실상 무제한)
        rho: 대응점 법선 각도 허용치 (radian)
        dist: 대응점 거리 허용치
        border: 대상 경계 면 위의 대응점 허용 여부
        smooth / smoothit / smoothtype: 반복마다 적용할 평활 필터
        tol: 수렴 판정 (반복 간 평균 제곱 변위)
        useiter: True 면 매 반복 최신 메쉬를 기준으로 S 재구성, False 면 정렬된 원본과 캐시된 S 사용
        minclost: 최소 대응점 수
        distinc: 대응점 부족 시 거리 허용치 증가량
        scale / reflection: 랜드마크 강체 정렬 옵션
        icp: 초기 강체 ICP 설정 (RigidICPSpec 또는 (iterations, rhotol, uprange, scale))
        nn: 최근접 면 후보 수
        cores: 최근접점 질의 worker 수
        silent: 반복 로그를 DEBUG 로 낮춤
        max_relaxations: 거리 허용치 증가 최대 횟수
    """
    k: Weights = 1
    lam: Weights = 1.0
    iterations: int = DEFAULTS.iterations
    rho: float = np.pi / 2
    dist: float = 2.0
    border: bool = False
    smooth: bool = True
    smoothit: int = 1
    smoothtype: str = "taubin"
    tol: float = 1e-4
    useiter: bool = True
    minclost: int = 50
    distinc: float = 1.0
    scale: bool = True
    reflection: bool = False
    icp: Optional[Union[RigidICPSpec, Sequence[float]]] = None
    nn: int = DEFAULTS.nn
    cores: int = DEFAULTS.cores
    silent: bool = False
    max_relaxations: int = DEFAULTS.max_relaxations


@dataclass(frozen=True)
class IterationEvent:
    """Progress report emitted after every solved step."""
    iteration: int
    elapsed: float
    error: float
    n_correspondences: int
    distance: float
    state: RegistrationState


@dataclass
class RegistrationResult:
    """
    Attributes:
        mesh: final deformed mesh
        meshrot: source mesh after rigid alignment (before any deformation)
        lm1rot: aligned source landmarks (None without landmarks)
        lmtmp1: last accepted correspondences on the reference mesh
        lmtmp2: last accepted correspondences on the target surface
        iterations: number of solved steps (the landmark step counts)
        error: last mean squared displacement between steps
        state: CONVERGED or MAX_ITER
        history: all emitted progress events
    """
    mesh: MeshData
    meshrot: MeshData
    lm1rot: Optional[np.ndarray]
    lmtmp1: np.ndarray
    lmtmp2: np.ndarray
    iterations: int
    error: float
    state: RegistrationState
    history: List[IterationEvent] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.state == RegistrationState.CONVERGED


def _weight_vector(value: Weights, name: str, iterations: int, cap: int) -> np.ndarray:
    vec = np.atleast_1d(np.asarray(value, dtype=np.float64)).reshape(-1)
    if vec.size == 1:
        return vec
    if iterations < 1 or vec.size != cap:
        raise ParameterLengthMismatch(
            f"{name} must be a scalar or a vector of length 'iterations' ({iterations}), got {vec.size}"
        )
    return vec


def validate_weights(params: RegistrationParams) -> Tuple[np.ndarray, np.ndarray, int]:
    """
    Check the per-iteration weights against the iteration cap.

    Returns:
        (k, lam, cap): weight vectors of length 1 (broadcast) or `cap`, and the cap

    Raises:
        ParameterLengthMismatch: a weight vector has neither length 1 nor `iterations`
    """
    iterations = int(params.iterations)
    cap = iterations if iterations >= 1 else UNBOUNDED_ITERATIONS

    lam = _weight_vector(params.lam, "lambda", iterations, cap)
    k = np.round(_weight_vector(params.k, "k", iterations, cap))
    if not (np.all(np.isfinite(lam)) and np.all(np.isfinite(k))):
        raise ValueError("k and lambda must be finite")
    return k, lam, cap


def _pick(vec: np.ndarray, iteration: int) -> float:
    return float(vec[0] if vec.size == 1 else vec[iteration - 1])


def _mean_squared_displacement(new: np.ndarray, old: np.ndarray) -> float:
    return float(np.sum((np.asarray(new) - np.asarray(old)) ** 2) / max(1, old.shape[0]))


class RegistrationDriver:
    """
    Elastic ICP 정합 상태 기계

    The driver exclusively owns the working mesh and the smoothness cache.
    The target mesh is never modified.
    """

    def __init__(
        self,
        source: MeshData,
        target: MeshData,
        lm1: Optional[np.ndarray] = None,
        lm2: Optional[np.ndarray] = None,
        params: Optional[RegistrationParams] = None,
        progress: Optional[Callable[[IterationEvent], None]] = None,
    ):
        self.params = params if params is not None else RegistrationParams()
        self.progress = progress
        self.source = source
        self.target = target
        self.lm1 = None if lm1 is None else np.asarray(lm1, dtype=np.float64).reshape(-1, 3)
        self.lm2 = None if lm2 is None else np.asarray(lm2, dtype=np.float64).reshape(-1, 3)

        self.state = RegistrationState.INIT
        self.history: List[IterationEvent] = []

        self._k: np.ndarray = np.ones(1)
        self._lam: np.ndarray = np.ones(1)
        self._cap = 0
        self._count = 0
        self._error = np.inf
        self._finder: Optional[CorrespondenceFinder] = None
        self._smoothness: Optional[SmoothnessOperator] = None

        self._mesh: Optional[MeshData] = None
        self._meshrot: Optional[MeshData] = None
        self._lm1rot: Optional[np.ndarray] = None
        self._lmtmp1 = np.zeros((0, 3), dtype=np.float64)
        self._lmtmp2 = np.zeros((0, 3), dtype=np.float64)

    @property
    def has_landmarks(self) -> bool:
        return self.lm1 is not None and self.lm2 is not None

    @property
    def smoothness_cache(self) -> Optional[SmoothnessOperator]:
        return self._smoothness

    def run(self) -> RegistrationResult:
        result = self._execute()
        self._warn_if_unconverged(stacklevel=3)
        return result

    def _execute(self) -> RegistrationResult:
        self._init()
        done = self._align()
        if not done:
            self.state = RegistrationState.ITERATING
            # the landmark step never ends the loop on its own
            loop_error = np.inf
            while self._count < self._cap and loop_error > float(self.params.tol):
                loop_error = self._iterate_once()
        return self._finish()

    def _init(self) -> None:
        """Validate parameters first, then clean the source mesh."""
        self.state = RegistrationState.INIT
        self._k, self._lam, self._cap = validate_weights(self.params)
        if (self.lm1 is None) != (self.lm2 is None):
            raise ValueError("lm1 and lm2 must be given together")
        if self.has_landmarks and self.lm1.shape != self.lm2.shape:
            raise ValueError(f"landmark sets differ in shape: {self.lm1.shape} vs {self.lm2.shape}")

        validate_mesh_arrays(self.target, name="target mesh")
        self._mesh = clean_mesh(self.source)
        self._meshrot = self._mesh
        self._count = 0
        self._error = np.inf
        self._smoothness = None
        self.history = []

        p = self.params
        self._finder = CorrespondenceFinder(
            self.target,
            rho=p.rho,
            dist=p.dist,
            border=p.border,
            minclost=p.minclost,
            distinc=p.distinc,
            nn=p.nn,
            cores=p.cores,
            max_relaxations=p.max_relaxations,
        )

    def _align(self) -> bool:
        """
        Rigid pre-alignment and, for plain landmark alignment, the first
        deformation from the landmark pairs.

        Returns:
            True when the iteration cap is already used up
        """
        p = self.params
        if not self.has_landmarks:
            if p.icp is not None:
                _LOGGER.warning("Rigid ICP settings ignored: landmarks are required to seed it")
            self._prepare_cache()
            return False

        self.state = RegistrationState.ALIGNING
        if p.icp is not None:
            spec = p.icp if isinstance(p.icp, RigidICPSpec) else RigidICPSpec.from_sequence(p.icp)
            matrix, cost = rigid_icp(
                self._mesh,
                self.target,
                spec,
                lm1=self.lm1,
                lm2=self.lm2,
                reflection=p.reflection,
                nn=p.nn,
                cores=p.cores,
            )
            _LOGGER.info("Rigid ICP pre-alignment finished (cost=%g)", cost)
            self._meshrot = self._mesh = transform_mesh(self._mesh, matrix)
            self._lm1rot = transform_points(self.lm1, matrix)
            self._prepare_cache()
            return False

        matrix = rigid_landmark_alignment(self.lm1, self.lm2, scale=p.scale, reflection=p.reflection)
        self._meshrot = transform_mesh(self._mesh, matrix)
        self._lm1rot = transform_points(self.lm1, matrix)
        self._lmtmp1 = self._lm1rot
        self._lmtmp2 = self.lm2.copy()

        self._log("Performing landmark based matching 1")
        t0 = time.perf_counter()
        result = elastic_deform(
            self._meshrot,
            self.lm2,
            points=self._lm1rot,
            k=_pick(self._k, 1),
            lam=_pick(self._lam, 1),
            nn=p.nn,
            cores=p.cores,
        )
        if not p.useiter:
            self._smoothness = result.smoothness

        self._mesh = result.mesh
        self._count = 1
        self._error = _mean_squared_displacement(result.mesh.vertices, self._meshrot.vertices)
        self._emit(t0, n_correspondences=self.lm2.shape[0], distance=0.0)
        return self._count >= self._cap

    def _prepare_cache(self) -> None:
        if not self.params.useiter:
            self._smoothness = AffineFrameBuilder().build(self._meshrot)

    def _iterate_once(self) -> float:
        """One match / solve / smooth step; returns the displacement error."""
        p = self.params
        t0 = time.perf_counter()
        iteration = self._count + 1

        if p.useiter:
            reference = self._mesh
            self._smoothness = None
        else:
            reference = self._meshrot

        vert_old = self._mesh.vertices.copy()
        corr = self._finder.find(self._mesh, reference.vertices)

        result = elastic_deform(
            reference,
            corr.target_points,
            indices=corr.indices,
            k=_pick(self._k, iteration),
            lam=_pick(self._lam, iteration),
            smoothness=self._smoothness,
            nn=p.nn,
            cores=p.cores,
        )
        if not p.useiter:
            self._smoothness = result.smoothness

        mesh = result.mesh
        if p.smooth:
            mesh = smooth_mesh(mesh, iterations=p.smoothit, method=p.smoothtype)

        self._mesh = mesh
        self._lmtmp1 = corr.source_points
        self._lmtmp2 = corr.target_points
        self._count = iteration
        self._error = _mean_squared_displacement(mesh.vertices, vert_old)

        self._emit(t0, n_correspondences=len(corr), distance=corr.used_distance)
        if self._error < float(p.tol):
            self._log(f"Convergence threshold reached after {iteration} iterations")
        return self._error

    def _finish(self) -> RegistrationResult:
        if self._error < float(self.params.tol):
            self.state = RegistrationState.CONVERGED
        else:
            self.state = RegistrationState.MAX_ITER

        return RegistrationResult(
            mesh=self._mesh,
            meshrot=self._meshrot,
            lm1rot=self._lm1rot,
            lmtmp1=self._lmtmp1,
            lmtmp2=self._lmtmp2,
            iterations=self._count,
            error=float(self._error),
            state=self.state,
            history=list(self.history),
        )

    def _warn_if_unconverged(self, *, stacklevel: int) -> None:
        """stacklevel counts from here to the caller of the public entry point"""
        if self.state != RegistrationState.MAX_ITER:
            return
        warnings.warn(
            f"Registration stopped after {self._count} iterations without reaching "
            f"tol={self.params.tol:g} (last error {self._error:g})",
            ConvergenceNotReached,
            stacklevel=stacklevel,
        )

    def _emit(self, t0: float, *, n_correspondences: int, distance: float) -> None:
        event = IterationEvent(
            iteration=self._count,
            elapsed=time.perf_counter() - t0,
            error=float(self._error),
            n_correspondences=int(n_correspondences),
            distance=float(distance),
            state=self.state,
        )
        self.history.append(event)
        self._log(
            f"Finished iteration {event.iteration} in {event.elapsed:.2f} s "
            f"(MSE between iterations: {event.error:g}, {event.n_correspondences} correspondences)"
        )
        if self.progress is not None:
            self.progress(event)

    def _log(self, message: str) -> None:
        _LOGGER.log(logging.DEBUG if self.params.silent else logging.INFO, message)


def amberg_register(
    mesh1: MeshData,
    mesh2: MeshData,
    lm1: Optional[np.ndarray] = None,
    lm2: Optional[np.ndarray] = None,
    *,
    progress: Optional[Callable[[IterationEvent], None]] = None,
    **params,
) -> RegistrationResult:
    """
    Elastically register `mesh1` onto `mesh2`.

    Keyword arguments are RegistrationParams fields, e.g.
    ``amberg_register(src, tgt, lm1, lm2, iterations=10, lam=[1] * 10, smooth=False)``.

    Raises:
        ParameterLengthMismatch, InvalidMeshTopology, DegenerateGeometry,
        FactorizationFailure, CorrespondenceStarvation

    Warns:
        ConvergenceNotReached: the cap was reached above tolerance
    """
    driver = RegistrationDriver(
        mesh1,
        mesh2,
        lm1=lm1,
        lm2=lm2,
        params=RegistrationParams(**params),
        progress=progress,
    )
    result = driver._execute()
    driver._warn_if_unconverged(stacklevel=3)
    return result
