"""
Elastic ICP mesh registration
"""

from .mesh_loader import MeshLoader, MeshData, MeshProcessor, load_landmarks
from .affine_frames import AffineFrameBuilder, SmoothnessOperator
from .deformation import elastic_deform, DeformResult
from .closest_point import SurfaceQuery, ClosestPointResult
from .correspondence import CorrespondenceFinder, CorrespondenceSet
from .alignment_utils import RigidICPSpec, rigid_icp, rigid_landmark_alignment
from .register import (
    RegistrationDriver,
    RegistrationParams,
    RegistrationResult,
    RegistrationState,
    IterationEvent,
    amberg_register,
)
from .errors import (
    RegistrationError,
    InvalidMeshTopology,
    ParameterLengthMismatch,
    DegenerateGeometry,
    FactorizationFailure,
    CorrespondenceStarvation,
    ConvergenceNotReached,
)

__all__ = [
    # Mesh loading
    'MeshLoader',
    'MeshData',
    'MeshProcessor',
    'load_landmarks',
    # Elastic solve
    'AffineFrameBuilder',
    'SmoothnessOperator',
    'elastic_deform',
    'DeformResult',
    # Correspondences
    'SurfaceQuery',
    'ClosestPointResult',
    'CorrespondenceFinder',
    'CorrespondenceSet',
    # Rigid alignment
    'RigidICPSpec',
    'rigid_icp',
    'rigid_landmark_alignment',
    # Registration
    'RegistrationDriver',
    'RegistrationParams',
    'RegistrationResult',
    'RegistrationState',
    'IterationEvent',
    'amberg_register',
    # Errors
    'RegistrationError',
    'InvalidMeshTopology',
    'ParameterLengthMismatch',
    'DegenerateGeometry',
    'FactorizationFailure',
    'CorrespondenceStarvation',
    'ConvergenceNotReached',
]
