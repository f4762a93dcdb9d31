import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np


class Visualizer:
    def __init__(self, figsize=(10, 8)):
        self.figsize = figsize

    def plot_map(self, trajectory, points=None, loop_edges=None, path=None, title="Trajectory and map"):
        """
        Top-down (x-y) plot of the keyframe trajectory, landmarks and loop edges.

        Args:
            trajectory: List of (timestamp, 4x4 pose) or 4x4 poses.
            points: Nx3 array of landmark positions.
            loop_edges: List of (position_a, position_b) pairs.
            path: Output image path; the figure is returned when None.
        """
        poses = [p[1] if isinstance(p, tuple) else p for p in trajectory]
        positions = np.array([p[:3, 3] for p in poses]).reshape(-1, 3)

        fig, ax = plt.subplots(figsize=self.figsize)
        if points is not None and len(points):
            points = np.asarray(points)
            ax.scatter(points[:, 0], points[:, 1], c='green', s=2, label='Landmarks')
        if len(positions):
            ax.plot(positions[:, 0], positions[:, 1], c='red', label='Trajectory')
            ax.scatter(positions[:, 0], positions[:, 1], c='blue', s=10)
        for k, (a, b) in enumerate(loop_edges or []):
            ax.plot([a[0], b[0]], [a[1], b[1]], c='orange', linestyle='--',
                    label='Loop closure' if k == 0 else None)

        ax.set_title(title)
        ax.set_xlabel("X (m)")
        ax.set_ylabel("Y (m)")
        ax.axis('equal')
        ax.legend()
        ax.grid(True)

        if path is None:
            return fig
        fig.savefig(path, dpi=150, bbox_inches='tight')
        plt.close(fig)
        return path
