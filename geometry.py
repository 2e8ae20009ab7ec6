"""
Robust geometric estimators used by the reconstruction loop.

Contains:
- Relative pose of two views (5-point essential matrix + RANSAC)
- Absolute pose of a view from 2D-3D correspondences (PnP + RANSAC)
- Linear N-view triangulation (DLT)
- Reprojection errors, depths and triangulation angles

Estimators raise ValueError when no geometrically consistent solution is found.
"""

import cv2 as cv
import numpy as np

from utils import Camera, NDArrayFloat

MIN_RELATIVE_POSE_POINTS = 5
MIN_ABSOLUTE_POSE_POINTS = 6


def estimate_relative_pose(
    pts_a: NDArrayFloat,
    pts_b: NDArrayFloat,
    cam_a: Camera,
    cam_b: Camera,
    threshold: float = 4.0,
    prob: float = 0.999,
) -> tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat]:
    """Estimate the pose of view b relative to view a (a is at the origin).

    Returns:
        R: 3x3 rotation matrix
        t: translation vector (unit length)
        inliers: boolean mask of correspondences consistent with the pose (incl. cheirality)
    """
    if len(pts_a) < MIN_RELATIVE_POSE_POINTS:
        raise ValueError(f"Relative pose needs at least {MIN_RELATIVE_POSE_POINTS} correspondences, got {len(pts_a)}")

    # Work in normalized coordinates so both views may have different intrinsics
    norm_a = cam_a.normalize(pts_a)
    norm_b = cam_b.normalize(pts_b)
    focal = 0.5 * (cam_a.focal + cam_b.focal)

    E, mask = cv.findEssentialMat(
        norm_a, norm_b, np.eye(3), method=cv.RANSAC, prob=prob, threshold=threshold / focal
    )
    if E is None or mask is None:
        raise ValueError("Essential matrix estimation failed")
    # several solutions may come stacked (3k x 3); the first is the best supported one
    E = E[:3]

    n_inliers, R, t, mask = cv.recoverPose(E, norm_a, norm_b, np.eye(3), mask=mask)
    inliers = mask.ravel() > 0
    if n_inliers < MIN_RELATIVE_POSE_POINTS:
        raise ValueError(f"Only {n_inliers} correspondences in front of both cameras")

    return R, t.ravel(), inliers


def count_homography_inliers(pts_a: NDArrayFloat, pts_b: NDArrayFloat, threshold: float = 4.0) -> int:
    """Correspondences a single homography explains (pure rotation, planar scene or tiny baseline)."""
    if len(pts_a) < 4:
        return 0
    H, mask = cv.findHomography(
        np.asarray(pts_a, dtype=np.float64), np.asarray(pts_b, dtype=np.float64), cv.RANSAC, threshold
    )
    if H is None or mask is None:
        return 0
    return int(mask.sum())


def estimate_absolute_pose(
    points_3d: NDArrayFloat,
    points_2d: NDArrayFloat,
    camera: Camera,
    threshold: float = 4.0,
    min_inliers: int = MIN_ABSOLUTE_POSE_POINTS,
) -> tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat]:
    """Estimate the pose of a view from 2D-3D correspondences.

    Returns:
        R: 3x3 rotation matrix (world -> camera)
        t: translation vector
        inliers: boolean mask of correspondences within `threshold` px after pose polishing
    """
    if len(points_3d) < MIN_ABSOLUTE_POSE_POINTS:
        raise ValueError(f"PnP needs at least {MIN_ABSOLUTE_POSE_POINTS} correspondences, got {len(points_3d)}")

    object_points = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    image_points = np.asarray(points_2d, dtype=np.float64).reshape(-1, 2)
    assert len(object_points) == len(image_points), "Number of 3D points must match number of 2D points"

    pnp_ok, rvec, tvec, inliers = cv.solvePnPRansac(
        object_points,
        image_points,
        camera.K,
        camera.dist,
        iterationsCount=1000,
        reprojectionError=threshold,
        confidence=0.999,
        flags=cv.SOLVEPNP_EPNP,
    )
    if not pnp_ok or inliers is None or len(inliers) < min_inliers:
        raise ValueError("solvePnPRansac failed to estimate pose.")

    # Polish on the RANSAC inliers
    idx = inliers.ravel()
    pnp_ok, rvec_refined, tvec_refined = cv.solvePnP(
        object_points[idx],
        image_points[idx],
        camera.K,
        camera.dist,
        rvec=rvec,
        tvec=tvec,
        useExtrinsicGuess=True,
        flags=cv.SOLVEPNP_ITERATIVE,
    )
    if pnp_ok:
        rvec, tvec = rvec_refined, tvec_refined

    R = cv.Rodrigues(rvec)[0]
    t = tvec.ravel()
    errors = reprojection_errors(camera, R, t, object_points, image_points)
    mask = (errors < threshold) & (depths(R, t, object_points) > 0)
    if mask.sum() < min_inliers:
        raise ValueError(f"Only {mask.sum()} inliers after pose refinement")

    return R, t, mask


def depths(R: NDArrayFloat, t: NDArrayFloat, points_3d: NDArrayFloat) -> NDArrayFloat:
    """Depth of world points (N, 3) in the camera frame."""
    points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    return points_3d @ R[2] + t[2]


def reprojection_errors(
    camera: Camera, R: NDArrayFloat, t: NDArrayFloat, points_3d: NDArrayFloat, points_2d: NDArrayFloat
) -> NDArrayFloat:
    """Per-point reprojection errors (in pixels)."""
    projected = camera.project(points_3d, R, t)
    return np.linalg.norm(projected - np.asarray(points_2d, dtype=np.float64).reshape(-1, 2), axis=1)


def triangulate_dlt(normalized_points: NDArrayFloat, pose_matrices: list[NDArrayFloat]) -> NDArrayFloat:
    """Triangulate one point from its normalized observations (N, 2) in N >= 2 views with [R|t] poses."""
    if len(pose_matrices) < 2:
        raise ValueError("Triangulation needs at least two views")
    A = []
    for (x, y), P in zip(np.asarray(normalized_points).reshape(-1, 2), pose_matrices):
        A.append(x * P[2] - P[0])
        A.append(y * P[2] - P[1])
    _, _, Vt = np.linalg.svd(np.asarray(A))
    X_h = Vt[-1]
    if abs(X_h[3]) < 1e-12:
        raise ValueError("Triangulated point at infinity")
    return X_h[:3] / X_h[3]


def ray_angles(centers: NDArrayFloat, X: NDArrayFloat) -> NDArrayFloat:
    """Pairwise angles (deg) between the rays from camera centers (N, 3) to the point X."""
    rays = np.asarray(X, dtype=np.float64)[None] - np.asarray(centers, dtype=np.float64)
    rays /= np.linalg.norm(rays, axis=1, keepdims=True) + 1e-12
    cos = np.clip(rays @ rays.T, -1.0, 1.0)
    iu = np.triu_indices(len(rays), k=1)
    return np.degrees(np.arccos(cos[iu]))


def max_ray_angle(centers: NDArrayFloat, X: NDArrayFloat) -> float:
    angles = ray_angles(centers, X)
    return float(angles.max()) if len(angles) else 0.0
