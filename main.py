"""
ElasticReg - elastic ICP mesh registration
소스 메쉬를 대상 메쉬에 비강체 정합하는 도구

Main entry point
"""

import sys
import argparse
import logging
from pathlib import Path

# Ensure repository root is on sys.path so "src" is importable.
ROOT_DIR = Path(__file__).resolve().parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from src.elasticreg.runtime_defaults import DEFAULTS
from src.elasticreg.output_paths import (
    registered_mesh_path,
    aligned_mesh_path,
    correspondence_path,
    ALIGNED_SUFFIX,
    CORRESPONDENCE_SUFFIX,
    sibling_path,
)

_LOGGER = logging.getLogger(__name__)
DEFAULT_MESH_UNIT = "mm"


def run_cli(argv=None) -> int:
    """커맨드라인 인터페이스 실행"""
    argv = list(sys.argv[1:] if argv is None else argv)
    try:
        from src.elasticreg.logging_utils import setup_logging

        setup_logging()
    except OSError as e:
        _LOGGER.debug("Failed to initialize logging: %s", e, exc_info=True)

    if not argv:
        print_help()
        return 0

    cmd = argv[0]

    if cmd == '--help' or cmd == '-h':
        print_help()
        return 0

    if cmd == '--info' and len(argv) > 1:
        return show_file_info(argv[1])

    if cmd == '--register':
        return register_meshes(argv[1:])

    print(f"Error: Unknown command: {cmd}")
    print("Use --help for usage information")
    return 2


def print_help():
    """도움말 출력"""
    from src.elasticreg.mesh_loader import MeshLoader

    print("=" * 60)
    print("ElasticReg - Elastic ICP Mesh Registration")
    print("=" * 60)
    print()
    print("Usage:")
    print("  python main.py --info <mesh_file>                    # Show file info")
    print("  python main.py --register <source> <target> [opts]   # Elastic registration")
    print()
    print("Registration options (python main.py --register -h for all):")
    print("  --lm1 FILE --lm2 FILE     landmark coordinates on source / target")
    print("  --k K [K ...]             normal slack weight (1 value or one per iteration)")
    print("  --lambda L [L ...]        correspondence weight (1 value or one per iteration)")
    print(f"  --iterations N            iteration cap (default {DEFAULTS.iterations}, < 1 = unbounded)")
    print("  --output FILE             registered mesh path")
    print()
    print(f"Supported formats: {list(MeshLoader.SUPPORTED_FORMATS.keys())}")
    print()
    print("Examples:")
    print("  python main.py --register face.ply template.ply --lm1 face.lm --lm2 template.lm")
    print("  python main.py --register scan.obj ref.obj --iterations 30 --lambda 0.5 --no-smooth")


def show_file_info(filepath: str) -> int:
    """파일 정보 표시"""
    from src.elasticreg.mesh_loader import MeshLoader

    print(f"\nFile Info: {filepath}")
    print("-" * 40)

    try:
        loader = MeshLoader(default_unit=DEFAULT_MESH_UNIT)
        info = loader.get_file_info(filepath)
    except (OSError, ValueError) as e:
        print(f"  Error: {e}")
        return 1

    for key, value in info.items():
        print(f"  {key}: {value}")
    return 0


def build_register_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="main.py --register",
        description="Elastically register a source mesh onto a target mesh.",
    )
    parser.add_argument("source", help="Mesh to deform.")
    parser.add_argument("target", help="Mesh to deform onto.")
    parser.add_argument("--lm1", default=None, help="Landmarks on the source mesh (text, one xyz per line).")
    parser.add_argument("--lm2", default=None, help="Landmarks on the target mesh.")
    parser.add_argument("--k", type=float, nargs="+", default=[1.0], help="Normal slack weight(s).")
    parser.add_argument("--lambda", dest="lam", type=float, nargs="+", default=[1.0], help="Correspondence weight(s).")
    parser.add_argument("--iterations", type=int, default=DEFAULTS.iterations, help="Iteration cap.")
    parser.add_argument("--rho", type=float, default=None, help="Normal angle tolerance in radians (default pi/2).")
    parser.add_argument("--dist", type=float, default=2.0, help="Correspondence distance tolerance.")
    parser.add_argument("--border", action="store_true", help="Accept matches on target border faces.")
    parser.add_argument("--no-smooth", dest="smooth", action="store_false", help="Disable per-iteration smoothing.")
    parser.add_argument("--smoothit", type=int, default=1, help="Smoothing passes per iteration.")
    parser.add_argument("--smoothtype", default="taubin", help="taubin, laplace or hclaplace.")
    parser.add_argument("--tol", type=float, default=1e-4, help="Convergence tolerance.")
    parser.add_argument(
        "--no-useiter",
        dest="useiter",
        action="store_false",
        help="Keep the aligned source as reference (reuses the smoothness operator).",
    )
    parser.add_argument("--minclost", type=int, default=50, help="Minimum number of correspondences.")
    parser.add_argument("--distinc", type=float, default=1.0, help="Distance tolerance increment.")
    parser.add_argument("--no-scale", dest="scale", action="store_false", help="Disallow scaling in rigid alignment.")
    parser.add_argument("--reflection", action="store_true", help="Allow reflections in rigid alignment.")
    parser.add_argument(
        "--icp",
        type=float,
        nargs=4,
        default=None,
        metavar=("ITER", "RHOTOL", "UPRANGE", "SCALE"),
        help="Rigid ICP pre-alignment seeded by the landmarks.",
    )
    parser.add_argument("--nn", type=int, default=DEFAULTS.nn, help="Candidate faces per closest point query.")
    parser.add_argument("--cores", type=int, default=DEFAULTS.cores, help="Worker threads for closest point queries.")
    parser.add_argument("--silent", action="store_true", help="Do not print per-iteration progress.")
    parser.add_argument("--output", default=None, help="Registered mesh path.")
    parser.add_argument("--unit", default=DEFAULT_MESH_UNIT, help="Default unit for the mesh loader.")
    return parser


def _print_progress(event) -> None:
    print(
        f"  [{event.iteration}] {event.elapsed:.2f} s, "
        f"MSE {event.error:.6g}, {event.n_correspondences} correspondences"
    )


def register_meshes(args_list) -> int:
    """정합 실행 후 결과 저장"""
    from src.elasticreg.mesh_loader import MeshLoader, MeshProcessor, load_landmarks
    from src.elasticreg.register import RegistrationParams, RegistrationDriver
    from src.elasticreg.errors import RegistrationError

    args = build_register_parser().parse_args(args_list)

    print(f"\n{'='*60}")
    print(f"Registering: {args.source} -> {args.target}")
    print(f"{'='*60}")

    try:
        loader = MeshLoader(default_unit=args.unit)
        source = loader.load(args.source)
        target = loader.load(args.target)
        print(f"  Source: {source.n_vertices:,} vertices, {source.n_faces:,} faces")
        print(f"  Target: {target.n_vertices:,} vertices, {target.n_faces:,} faces")

        lm1 = load_landmarks(args.lm1) if args.lm1 else None
        lm2 = load_landmarks(args.lm2) if args.lm2 else None

        extra = {}
        if args.rho is not None:
            extra["rho"] = args.rho

        params = RegistrationParams(
            k=args.k[0] if len(args.k) == 1 else tuple(args.k),
            lam=args.lam[0] if len(args.lam) == 1 else tuple(args.lam),
            iterations=args.iterations,
            dist=args.dist,
            border=args.border,
            smooth=args.smooth,
            smoothit=args.smoothit,
            smoothtype=args.smoothtype,
            tol=args.tol,
            useiter=args.useiter,
            minclost=args.minclost,
            distinc=args.distinc,
            scale=args.scale,
            reflection=args.reflection,
            icp=tuple(args.icp) if args.icp else None,
            nn=args.nn,
            cores=args.cores,
            silent=args.silent,
            **extra,
        )

        driver = RegistrationDriver(
            source,
            target,
            lm1=lm1,
            lm2=lm2,
            params=params,
            progress=None if args.silent else _print_progress,
        )
        result = driver.run()

        print(f"\n  State: {result.state.value} after {result.iterations} iterations (MSE {result.error:.6g})")

        registered = registered_mesh_path(args.source, args.output)
        if args.output:
            aligned = sibling_path(registered, ALIGNED_SUFFIX)
            pairs = sibling_path(registered, CORRESPONDENCE_SUFFIX)
        else:
            aligned = aligned_mesh_path(args.source)
            pairs = correspondence_path(args.source)

        processor = MeshProcessor()
        processor.save_mesh(result.mesh, registered)
        processor.save_mesh(result.meshrot, aligned)
        processor.save_point_pairs(result.lmtmp1, result.lmtmp2, pairs)

        print(f"  Saved: {registered}")
        print(f"  Saved: {aligned}")
        print(f"  Saved: {pairs}")
        return 0

    except (RegistrationError, OSError, ValueError, TypeError) as e:
        _LOGGER.exception("Registration failed")
        print(f"\nError: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == '__main__':
    sys.exit(run_cli())
