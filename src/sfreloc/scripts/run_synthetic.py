from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

import cv2
import numpy as np

try:
    import yaml
except ImportError as ex:
    raise ImportError("PyYAML is required. Install with: pip install pyyaml") from ex

from sfreloc.dataset.synthetic import SyntheticSceneConfig, make_scene
from sfreloc.geom.se3 import Rt_to_T, rotation_angle
from sfreloc.system.config import RelocaliserConfig
from sfreloc.system.ransac import estimate_pose
from sfreloc.system.telemetry import Telemetry


def _R_to_quat_xyzw(R: np.ndarray) -> np.ndarray:
    # Returns quaternion [x,y,z,w] from rotation matrix.
    m = R.astype(np.float64)
    trace = float(np.trace(m))
    if trace > 0.0:
        s = np.sqrt(trace + 1.0) * 2.0
        qw = 0.25 * s
        qx = (m[2, 1] - m[1, 2]) / s
        qy = (m[0, 2] - m[2, 0]) / s
        qz = (m[1, 0] - m[0, 1]) / s
    else:
        if m[0, 0] > m[1, 1] and m[0, 0] > m[2, 2]:
            s = np.sqrt(1.0 + m[0, 0] - m[1, 1] - m[2, 2]) * 2.0
            qw = (m[2, 1] - m[1, 2]) / s
            qx = 0.25 * s
            qy = (m[0, 1] + m[1, 0]) / s
            qz = (m[0, 2] + m[2, 0]) / s
        elif m[1, 1] > m[2, 2]:
            s = np.sqrt(1.0 + m[1, 1] - m[0, 0] - m[2, 2]) * 2.0
            qw = (m[0, 2] - m[2, 0]) / s
            qx = (m[0, 1] + m[1, 0]) / s
            qy = 0.25 * s
            qz = (m[1, 2] + m[2, 1]) / s
        else:
            s = np.sqrt(1.0 + m[2, 2] - m[0, 0] - m[1, 1]) * 2.0
            qw = (m[1, 0] - m[0, 1]) / s
            qx = (m[0, 2] + m[2, 0]) / s
            qy = (m[1, 2] + m[2, 1]) / s
            qz = 0.25 * s

    q = np.array([qx, qy, qz, qw], dtype=np.float64)
    n = np.linalg.norm(q) + 1e-12
    return q / n


def _write_pose_tum(T_w_c: np.ndarray, ts: float, out_path: str) -> None:
    with open(out_path, "w", encoding="utf-8") as f:
        t = T_w_c[:3, 3]
        q = _R_to_quat_xyzw(T_w_c[:3, :3])  # x y z w
        f.write(f"{ts:.6f} {t[0]:.6f} {t[1]:.6f} {t[2]:.6f} {q[0]:.6f} {q[1]:.6f} {q[2]:.6f} {q[3]:.6f}\n")


def _scene_from_cfg(cfg: dict) -> tuple[SyntheticSceneConfig, np.ndarray]:
    scene = dict(cfg.get("scene", {}))
    rotvec = np.asarray(scene.pop("rotvec", [0.0, 0.0, 0.0]), dtype=np.float64)
    translation = np.asarray(scene.pop("translation", [0.0, 0.0, 0.0]), dtype=np.float64)
    R, _ = cv2.Rodrigues(rotvec.reshape(3, 1))
    return SyntheticSceneConfig(**scene), Rt_to_T(R, translation)


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", type=str, default="configs/default.yaml")
    ap.add_argument("--out_dir", type=str, default="outputs")
    ap.add_argument("--seed", type=int, default=None, help="Override the relocaliser seed")
    ap.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = ap.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
    )

    print(f"[INFO] Loading config: {args.config}")
    with open(args.config, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)
    if args.seed is not None:
        cfg["seed"] = int(args.seed)

    reloc_cfg = RelocaliserConfig.from_dict(cfg)
    scene_cfg, T_gt = _scene_from_cfg(cfg)

    out_dir = Path(args.out_dir) / "synthetic"
    out_dir.mkdir(parents=True, exist_ok=True)
    print(f"[INFO] Output dir: {out_dir}")

    frame, features, predictions = make_scene(T_gt, scene_cfg)
    print(f"[INFO] Scene: {features.width}x{features.height}, valid pixels: {features.count_valid()}")

    telemetry = Telemetry()
    result = estimate_pose(features, predictions, reloc_cfg, telemetry=telemetry)

    metrics_path = str(out_dir / "metrics.json")
    cfg_path = str(out_dir / "config_used.yaml")

    if result.success:
        T = result.pose
        rot_err = rotation_angle(T[:3, :3] @ T_gt[:3, :3].T)
        trans_err = float(np.linalg.norm(T[:3, 3] - T_gt[:3, 3]))
        print(f"[INFO] Final pose:\n{T}")
        print(f"[INFO] rotation error: {np.degrees(rot_err):.4f} deg, translation error: {trans_err:.4f} m")
        telemetry.attempts[-1]["rotation_error_rad"] = rot_err
        telemetry.attempts[-1]["translation_error_m"] = trans_err

        pose_path = str(out_dir / "pose.txt")
        _write_pose_tum(T, frame.ts, pose_path)
        print(f"[OK] wrote: {pose_path}")
    else:
        print(f"[INFO] No pose: {result.status.value} ({result.reason})")

    with open(metrics_path, "w", encoding="utf-8") as f:
        json.dump({"summary": telemetry.summary(), "attempts": telemetry.attempts}, f, indent=2)

    with open(cfg_path, "w", encoding="utf-8") as f:
        yaml.safe_dump({**cfg, **reloc_cfg.to_dict()}, f, sort_keys=False)

    print(f"[OK] wrote: {metrics_path}")


if __name__ == "__main__":
    main()
