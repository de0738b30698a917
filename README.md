# visodom

Small, readable building blocks for visual odometry, written with numpy,
scipy and Pillow:

- `visodom.rotation`: angle-axis and quaternion conversions, and rotating points
  (`angle_axis_rotate_point`).
- `visodom.lie`: `hat`/`vee`, `so3_exp`/`so3_log` and the `SE3` pose type
  (`SE3.exp`, `act`, `matrix`, `inverse`, composition with `@`).
- `visodom.features`: `KeyPoint`, `DMatch`, `min_max_distance` and
  `filter_matches` (keeps matches within `max(2 * min_distance, 30)`).
- `visodom.orb`: FAST-9 corners (`fast_detect`), steered BRIEF descriptors
  (`compute_orb`, `None` for keypoints within 16 pixels of the border) and
  brute-force Hamming matching below distance 40 (`bf_match`).
- `visodom.epipolar`: `find_fundamental_8point`, `find_essential` and
  `find_homography` (RANSAC), `recover_pose`, `epipolar_constraint`,
  `triangulate`, `pixel2cam` and `depth_color`.
- `visodom.icp`: 3D–3D alignment by SVD (`pose_estimation_3d3d`) and by
  Levenberg–Marquardt pose refinement (`bundle_adjustment_3d3d`).
- `visodom.pnp`: 3D–2D pose estimation by Gauss–Newton
  (`bundle_adjustment_gauss_newton`, `optimize_pose`, `EdgeProjection`) and
  `build_3d2d_pairs` from matches and a 16-bit depth image.
- `visodom.image`: bilinear sampling (`get_pixel_value`), `build_pyramid`
  and `load_gray`.
- `visodom.optical_flow`: single- and multi-level Lucas–Kanade tracking,
  forward or inverse formulation.
- `visodom.direct`: direct (photometric) pose estimation on one level or over
  a four-level pyramid (`Intrinsics`, `JacobianAccumulator`).
- `visodom.bal`, `visodom.noise`, `visodom.reprojection`,
  `visodom.bundle_adjustment`: loading, writing, normalising, perturbing and
  solving Bundle Adjustment in the Large problems.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Command-line tools

Each tool reads its input files, prints its progress and results, and exits.

```
visodom-ba problem.txt                          # bundle adjustment of a BAL problem file
visodom-orb [img1 img2]                         # ORB extraction and matching
visodom-optical-flow [img1 img2]                # Lucas–Kanade tracking
visodom-pnp img1 img2 depth1 depth2             # 3D–2D pose estimation
visodom-direct [data_dir]                       # direct method pose estimation
```

- `visodom-ba` normalises and perturbs the problem, writes the starting point
  cloud to `initial.ply`, optimises cameras and points with a Huber loss, and
  writes the result to `final.ply`.
- `visodom-orb` defaults to `./1.png` and `./2.png` and saves the matches
  picture to `matches.png`.
- `visodom-optical-flow` defaults to `./LK1.png` and `./LK2.png`, tracks
  Shi–Tomasi corners and saves `tracked_single.png` and `tracked_multi.png`.
- `visodom-pnp` matches ORB features, lifts them with the first depth image
  (scale 5000) and prints the pose from Gauss–Newton and from the
  edge-by-edge optimisation. The fourth argument is required but not read.
- `visodom-direct` reads `left.png`, `disparity.png` and `000001.png` to
  `000005.png` from `data_dir` (default: the current directory) and prints the
  estimated motion of each frame.

## Library use

Rotating a point with an angle-axis vector:

```python
import math
from visodom.rotation import angle_axis_rotate_point

print(angle_axis_rotate_point([0.0, 0.0, math.pi / 2], [1.0, 0.0, 0.0]))
# approximately [0, 1, 0]
```

Composing poses:

```python
from visodom.lie import SE3

pose = SE3.exp([0.1, 0.0, 0.0, 0.0, 0.0, 0.2])
identity = pose @ pose.inverse()
print(identity.matrix())
```

Solving a BAL problem:

```python
import random
from visodom.bal import BALProblem
from visodom.bundle_adjustment import solve_ba

problem = BALProblem.from_file("problem.txt")
problem.normalize()
problem.perturb(0.1, 0.5, 0.5, random.Random(0))
problem.write_to_ply_file("initial.ply")
cost = solve_ba(problem, max_iterations=40)
problem.write_to_ply_file("final.ply")
```

`solve_ba` needs cameras in angle-axis form; a problem loaded with
`use_quaternions=True` can be written out with `write_to_file` but not solved.

A BAL file holds a header of camera, point and observation counts, then one
line per observation (camera index, point index, x, y), then nine parameters
per camera (angle-axis rotation, translation, focal length, two radial
distortion coefficients) and three coordinates per point.

## What the package does not do

- It opens no windows: pictures are written to files, and `visodom-direct`
  only prints poses.
- There is no command for two-view pose estimation or triangulation; use the
  functions in `visodom.epipolar` directly.
- Keypoint detection for the tools is the package's own FAST and Shi–Tomasi
  code; there is no multi-scale ORB detector.