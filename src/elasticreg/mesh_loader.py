"""
Mesh Loader Module
메쉬 파일 로딩 및 정합용 메쉬 데이터 구조 정의

Supports: OBJ, PLY, STL, OFF formats
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union
import numpy as np

try:
    import trimesh
except ImportError:
    raise ImportError("trimesh is required. Install with: pip install trimesh")


@dataclass(frozen=True)
class InteriorEdges:
    """
    두 면이 공유하는 (경계가 아닌) 엣지 목록

    Attributes:
        vert1, vert2: (E,) 엣지 양 끝 정점 인덱스
        face1, face2: (E,) 엣지에 인접한 두 면 인덱스
    """
    vert1: np.ndarray
    vert2: np.ndarray
    face1: np.ndarray
    face2: np.ndarray

    def __len__(self) -> int:
        return int(self.face1.shape[0])


@dataclass
class MeshData:
    """
    3D 삼각형 메쉬 데이터 컨테이너

    Attributes:
        vertices: (N, 3) 정점 좌표 배열
        faces: (M, 3) 면 인덱스 배열 (삼각형)
        normals: (N, 3) 정점 법선 벡터 (선택)
        face_normals: (M, 3) 면 법선 벡터 (선택)
        unit: 좌표 단위 ('mm', 'cm', 'm')
        filepath: 원본 파일 경로
    """
    vertices: np.ndarray
    faces: np.ndarray
    normals: Optional[np.ndarray] = None
    face_normals: Optional[np.ndarray] = None
    unit: str = 'mm'
    filepath: Optional[Path] = None

    # Computed properties cache
    _surface_area: Optional[float] = field(default=None, repr=False)
    _trimesh: Optional['trimesh.Trimesh'] = field(default=None, repr=False)

    def __post_init__(self):
        """데이터 검증 및 타입 변환"""
        self.vertices = np.asarray(self.vertices, dtype=np.float64)
        self.faces = np.asarray(self.faces, dtype=np.int32)
        if self.faces.size == 0:
            self.faces = self.faces.reshape(0, 3)

        if self.normals is not None:
            self.normals = np.asarray(self.normals, dtype=np.float64)
        if self.face_normals is not None:
            self.face_normals = np.asarray(self.face_normals, dtype=np.float64)

    @property
    def n_vertices(self) -> int:
        """정점 개수"""
        return len(self.vertices)

    @property
    def n_faces(self) -> int:
        """면 개수"""
        return len(self.faces)

    @property
    def triangles(self) -> np.ndarray:
        """(M, 3, 3) 면별 꼭짓점 좌표"""
        return self.vertices[self.faces]

    @property
    def face_areas(self) -> np.ndarray:
        """(M,) 면 면적"""
        tri = self.triangles
        cross = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])
        return np.linalg.norm(cross, axis=1) / 2.0

    @property
    def face_barycenters(self) -> np.ndarray:
        """(M, 3) 면 무게중심"""
        return self.triangles.mean(axis=1)

    @property
    def surface_area(self) -> float:
        """총 표면적"""
        if self._surface_area is None:
            self._surface_area = float(self.face_areas.sum())
        return self._surface_area

    def compute_normals(self, *, compute_vertex_normals: bool = True, force: bool = False) -> None:
        """법선 벡터 계산 (없는 경우)"""
        if force:
            self.face_normals = None
            self.normals = None

        if self.face_normals is None:
            v0 = self.vertices[self.faces[:, 0]]
            v1 = self.vertices[self.faces[:, 1]]
            v2 = self.vertices[self.faces[:, 2]]

            cross = np.cross(v1 - v0, v2 - v0)
            norms = np.linalg.norm(cross, axis=1, keepdims=True)
            norms[norms == 0] = 1  # 0으로 나누기 방지
            self.face_normals = cross / norms

        if compute_vertex_normals and self.normals is None:
            # 정점 법선 = 인접 면 법선의 면적 가중 평균
            self.normals = np.zeros_like(self.vertices, dtype=np.float64)
            faces = self.faces
            weighted = np.asarray(self.face_normals, dtype=np.float64) * (2.0 * self.face_areas)[:, None]
            np.add.at(self.normals, faces[:, 0], weighted)
            np.add.at(self.normals, faces[:, 1], weighted)
            np.add.at(self.normals, faces[:, 2], weighted)

            norms = np.linalg.norm(self.normals, axis=1, keepdims=True)
            norms[norms == 0] = 1
            self.normals = self.normals / norms

    def get_boundary_edges(self) -> np.ndarray:
        """
        경계 엣지 목록 반환 (K, 2)

        열린 메쉬(open surface)에서 한 면에만 속하는 엣지를 경계로 간주합니다.
        """
        if self.n_faces == 0:
            return np.zeros((0, 2), dtype=np.int32)
        tm = self.to_trimesh()
        idx = trimesh.grouping.group_rows(tm.edges_sorted, require_count=1)
        if len(idx) == 0:
            return np.zeros((0, 2), dtype=np.int32)
        return np.asarray(tm.edges_sorted[idx], dtype=np.int32)

    def get_border_faces(self) -> np.ndarray:
        """(M,) bool - 경계 엣지를 하나 이상 가진 면"""
        mask = np.zeros(self.n_faces, dtype=bool)
        if self.n_faces == 0:
            return mask
        tm = self.to_trimesh()
        idx = trimesh.grouping.group_rows(tm.edges_sorted, require_count=1)
        if len(idx) > 0:
            mask[np.asarray(tm.edges_face)[idx]] = True
        return mask

    def get_interior_edges(self) -> InteriorEdges:
        """두 면이 공유하는 엣지와 인접 면 쌍 (경계 엣지는 제외)"""
        if self.n_faces == 0:
            empty = np.zeros((0,), dtype=np.int64)
            return InteriorEdges(empty, empty, empty, empty)
        tm = self.to_trimesh()
        pairs = np.asarray(tm.face_adjacency, dtype=np.int64).reshape(-1, 2)
        edges = np.asarray(tm.face_adjacency_edges, dtype=np.int64).reshape(-1, 2)
        return InteriorEdges(
            vert1=edges[:, 0].copy(),
            vert2=edges[:, 1].copy(),
            face1=pairs[:, 0].copy(),
            face2=pairs[:, 1].copy(),
        )

    def with_vertices(self, vertices: np.ndarray) -> 'MeshData':
        """같은 위상에 정점 좌표만 교체한 새 메쉬 반환 (법선은 재계산)"""
        vertices = np.asarray(vertices, dtype=np.float64)
        if vertices.shape != self.vertices.shape:
            raise ValueError(
                f"vertex array shape {vertices.shape} does not match {self.vertices.shape}"
            )
        out = MeshData(
            vertices=vertices.copy(),
            faces=self.faces.copy(),
            unit=self.unit,
            filepath=self.filepath,
        )
        out.compute_normals()
        return out

    def to_trimesh(self) -> 'trimesh.Trimesh':
        """trimesh 객체로 변환 (캐싱, 위상 정보 조회용)"""
        if self._trimesh is None:
            self._trimesh = trimesh.Trimesh(
                vertices=self.vertices,
                faces=self.faces,
                process=False
            )
        return self._trimesh

    @classmethod
    def from_trimesh(cls, mesh: 'trimesh.Trimesh',
                     filepath: Optional[Path] = None,
                     unit: str = 'mm') -> 'MeshData':
        """trimesh 객체에서 생성"""
        return cls(
            vertices=np.array(mesh.vertices, dtype=np.float64),
            faces=np.array(mesh.faces, dtype=np.int32),
            # NOTE: 법선은 정합 단계에서 compute_normals()로 생성합니다.
            normals=None,
            face_normals=None,
            unit=unit,
            filepath=filepath
        )


class MeshLoader:
    """
    다양한 3D 포맷의 메쉬 파일 로더

    Supported formats:
        - OBJ (Wavefront)
        - PLY (Polygon File Format)
        - STL (Stereolithography)
        - OFF (Object File Format)
        - GLTF/GLB (GL Transmission Format)
    """

    SUPPORTED_FORMATS = {
        '.obj': 'Wavefront OBJ',
        '.ply': 'Polygon File Format',
        '.stl': 'Stereolithography',
        '.off': 'Object File Format',
        '.gltf': 'GL Transmission Format',
        '.glb': 'GL Transmission Format (Binary)',
    }

    def __init__(self, default_unit: str = 'mm'):
        """
        Args:
            default_unit: 기본 좌표 단위 ('mm', 'cm', 'm')
        """
        self.default_unit = default_unit

    def load(self, filepath: Union[str, Path], unit: Optional[str] = None) -> MeshData:
        """
        메쉬 파일 로드

        Args:
            filepath: 메쉬 파일 경로
            unit: 좌표 단위 (None이면 default_unit 사용)

        Returns:
            MeshData: 로드된 메쉬 데이터

        Raises:
            FileNotFoundError: 파일이 존재하지 않음
            ValueError: 지원하지 않는 포맷
        """
        filepath = Path(filepath)

        if not filepath.exists():
            raise FileNotFoundError(f"File not found: {filepath}")

        ext = filepath.suffix.lower()
        if ext not in self.SUPPORTED_FORMATS:
            raise ValueError(
                f"Unsupported format: {ext}\n"
                f"Supported formats: {list(self.SUPPORTED_FORMATS.keys())}"
            )

        unit = unit or self.default_unit

        # 정점 순서가 대응점 인덱스와 직결되므로 process 비활성화
        mesh = trimesh.load(str(filepath), force='mesh', process=False, maintain_order=True)

        # Scene인 경우 단일 메쉬로 병합
        if isinstance(mesh, trimesh.Scene):
            meshes = [g for g in mesh.geometry.values() if isinstance(g, trimesh.Trimesh)]
            if len(meshes) == 0:
                raise ValueError(f"No valid mesh found in: {filepath}")
            mesh = trimesh.util.concatenate(meshes)

        if not isinstance(mesh, trimesh.Trimesh):
            raise TypeError(f"Expected trimesh.Trimesh, got {type(mesh).__name__}")

        mesh_data = MeshData.from_trimesh(mesh, filepath=filepath, unit=unit)
        mesh_data.compute_normals()
        return mesh_data

    def get_file_info(self, filepath: Union[str, Path]) -> dict:
        """
        파일 정보 미리보기

        Args:
            filepath: 메쉬 파일 경로

        Returns:
            dict: 파일 정보 딕셔너리
        """
        filepath = Path(filepath)

        if not filepath.exists():
            raise FileNotFoundError(f"File not found: {filepath}")

        ext = filepath.suffix.lower()
        file_size = filepath.stat().st_size

        info = {
            'filename': filepath.name,
            'format': self.SUPPORTED_FORMATS.get(ext, 'Unknown'),
            'extension': ext,
            'file_size_mb': round(file_size / (1024 * 1024), 2),
        }

        try:
            mesh = self.load(filepath)
            info['n_vertices'] = mesh.n_vertices
            info['n_faces'] = mesh.n_faces
            info['n_boundary_edges'] = int(len(mesh.get_boundary_edges()))
        except Exception as e:
            info['error'] = str(e)

        return info


def load_landmarks(filepath: Union[str, Path]) -> np.ndarray:
    """
    대응점(landmark) 텍스트 파일 로드

    공백 또는 쉼표로 구분된 (K, 3) 좌표를 읽습니다. '#' 이후는 주석입니다.
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"File not found: {filepath}")

    text = filepath.read_text(encoding="utf-8").replace(",", " ")
    rows = []
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if line:
            rows.append([float(v) for v in line.split()])

    arr = np.asarray(rows, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"Expected (K, 3) landmark coordinates in: {filepath}")
    return arr


class MeshProcessor:
    """메쉬 및 대응점 저장 유틸리티"""

    def save_mesh(self, mesh_data: Union[MeshData, 'trimesh.Trimesh'], filepath: Union[str, Path]):
        """
        메쉬를 파일로 저장

        Args:
            mesh_data: MeshData 또는 trimesh.Trimesh 객체
            filepath: 저장할 파일 경로
        """
        filepath = str(filepath)

        if isinstance(mesh_data, MeshData):
            mesh = trimesh.Trimesh(
                vertices=mesh_data.vertices,
                faces=mesh_data.faces,
                process=False,
            )
        else:
            mesh = mesh_data

        mesh.export(filepath)

    def save_point_pairs(self, source: np.ndarray, target: np.ndarray,
                         filepath: Union[str, Path]) -> None:
        """대응점 쌍을 (K, 6) 텍스트로 저장: x1 y1 z1 x2 y2 z2"""
        source = np.asarray(source, dtype=np.float64).reshape(-1, 3)
        target = np.asarray(target, dtype=np.float64).reshape(-1, 3)
        if source.shape != target.shape:
            raise ValueError("source and target point arrays must have the same shape")
        np.savetxt(str(filepath), np.hstack([source, target]), fmt="%.9g",
                   header="x1 y1 z1 x2 y2 z2")
