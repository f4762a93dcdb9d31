from setuptools import setup, find_packages

setup(
    name="gcamslam",
    version="0.1.0",
    packages=find_packages(include=["gcamslam", "gcamslam.*"]),
    install_requires=[
        "numpy",
        "opencv-python",
        "scipy",
        "scikit-learn",
        "matplotlib",
        "tqdm",
        "pyyaml",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "gcamslam-calibrate=gcamslam.calibration.cli:main",
            "gcamslam-train-vocab=gcamslam.vocabulary.vocab_create:main",
        ],
    },
    description="Multi-camera visual(-inertial) SLAM with loop closure and rig self-calibration",
    python_requires=">=3.8",
)
