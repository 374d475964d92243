import cv2
import numpy as np

def Rt_to_T(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    T = np.eye(4)
    T[:3,:3] = R
    T[:3, 3] = t.reshape(3)
    return T

def inv_T(T: np.ndarray) -> np.ndarray:
    R = T[:3,:3]; t = T[:3,3]
    Ti = np.eye(4)
    Ti[:3,:3] = R.T
    Ti[:3, 3] = -R.T @ t
    return Ti

def transform_points(T: np.ndarray, pts: np.ndarray) -> np.ndarray:
    """Apply a 4x4 transform to (N,3) points."""
    pts = np.asarray(pts, dtype=np.float64).reshape(-1, 3)
    return pts @ T[:3, :3].T + T[:3, 3]

def skew(v: np.ndarray) -> np.ndarray:
    x, y, z = np.asarray(v, dtype=np.float64).reshape(3)
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]], dtype=np.float64)

def _left_jacobian(w: np.ndarray) -> np.ndarray:
    theta = float(np.linalg.norm(w))
    W = skew(w)
    if theta < 1e-8:
        return np.eye(3) + 0.5 * W
    return (
        np.eye(3)
        + ((1.0 - np.cos(theta)) / theta**2) * W
        + ((theta - np.sin(theta)) / theta**3) * (W @ W)
    )

def exp_se3(xi: np.ndarray) -> np.ndarray:
    """
    Twist (wx, wy, wz, vx, vy, vz) -> 4x4 rigid transform.
    Rotation block through cv2.Rodrigues.
    """
    xi = np.asarray(xi, dtype=np.float64).reshape(6)
    w, v = xi[:3], xi[3:]
    R, _ = cv2.Rodrigues(w.reshape(3, 1))
    return Rt_to_T(R, _left_jacobian(w) @ v)

def log_se3(T: np.ndarray) -> np.ndarray:
    """Inverse of exp_se3."""
    rvec, _ = cv2.Rodrigues(np.ascontiguousarray(T[:3, :3], dtype=np.float64))
    w = rvec.reshape(3)
    v = np.linalg.solve(_left_jacobian(w), T[:3, 3])
    return np.concatenate([w, v])

def is_rigid(T: np.ndarray, tol: float = 1e-5) -> bool:
    """Orthonormal rotation block with det +1 and a (0,0,0,1) bottom row."""
    T = np.asarray(T, dtype=np.float64)
    if T.shape != (4, 4):
        return False
    R = T[:3, :3]
    return (
        np.allclose(R.T @ R, np.eye(3), atol=tol)
        and abs(np.linalg.det(R) - 1.0) <= tol
        and np.allclose(T[3], [0.0, 0.0, 0.0, 1.0], atol=tol)
    )

def rotation_angle(R: np.ndarray) -> float:
    c = (float(np.trace(R)) - 1.0) * 0.5
    return float(np.arccos(min(1.0, max(-1.0, c))))
