"""
GCam-SLAM: sliding-window SLAM for multi-camera rigs.

This package provides an online SLAM back-end for rigs of generalized cameras,
optionally fused with inertial measurements, with appearance-based loop
closure and pose-graph correction, plus an extrinsic self-calibration
front-end that replays a recorded run through the same back-end.

The system is organized into several modules:
- core: Core data structures (Map, MapPoint, KeyFrame, CameraRig, Frame)
- frontend: Matching, initialization and the tracking state machine
- backend: Solver, windowed bundle adjustment, loop closing and pose graph
- utils: BoW database, output writers and visualization
- vocabulary: Offline visual-vocabulary training
- calibration: Rig configuration parsing and self-calibration driver
"""

__version__ = '0.1.0'
