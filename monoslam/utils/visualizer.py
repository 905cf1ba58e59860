import matplotlib.pyplot as plt
from mpl_toolkits.mplot3d import Axes3D  # noqa: F401  (registers the 3d projection)
import numpy as np

from monoslam.core.point_cloud import PointCloudSource


class Visualizer:
    """Matplotlib views of a point cloud snapshot and the camera trajectory."""

    def __init__(self, max_points=20000):
        self.max_points = max_points

    def plot_point_cloud(self, snapshot, trajectory=None, ax=None, title="Point Cloud"):
        """
        Scatter the snapshot points in their own colors, with the trajectory on top.

        :param snapshot: PointCloudSnapshot.
        :param trajectory: Optional (K, 3) array of camera centers.
        :param ax: Existing 3D axes to draw into.
        :return: The matplotlib figure.
        """
        if ax is None:
            fig = plt.figure(figsize=(10, 7))
            ax = fig.add_subplot(111, projection='3d')
        else:
            fig = ax.figure

        points = snapshot.positions.reshape(-1, 3)
        colors = snapshot.colors.reshape(-1, 3)
        if len(points) > self.max_points:
            step = int(np.ceil(len(points) / self.max_points))
            points, colors = points[::step], colors[::step]
        if len(points):
            ax.scatter(points[:, 0], points[:, 1], points[:, 2],
                       c=np.clip(colors, 0.0, 1.0), s=2, label='Map Points')

        if trajectory is not None and len(trajectory):
            trajectory = np.asarray(trajectory).reshape(-1, 3)
            ax.plot(trajectory[:, 0], trajectory[:, 1], trajectory[:, 2], c='red', label='Trajectory')
            ax.scatter(trajectory[:, 0], trajectory[:, 1], trajectory[:, 2], c='blue', s=20)

        ax.set_title(f"{title} ({snapshot.count} points)")
        ax.set_xlabel("X")
        ax.set_ylabel("Y")
        ax.set_zlabel("Z")
        if len(points) or (trajectory is not None and len(trajectory)):
            ax.legend()
        return fig

    def plot_source(self, source: PointCloudSource, trajectory=None, color_by_depth=False, ax=None):
        """
        Plot the current cloud of anything that hands out snapshots, e.g. the
        SLAM system itself or a point cloud accumulator.
        """
        snapshot = source.get_point_cloud_data(color_by_depth=color_by_depth)
        return self.plot_point_cloud(snapshot, trajectory, ax=ax)

    def plot_trajectory_xz(self, trajectory, ax=None):
        """
        Plot the trajectory in the XZ plane (top-down view).
        :param trajectory: (K, 3) array of camera centers.
        """
        trajectory = np.asarray(trajectory).reshape(-1, 3)
        if ax is None:
            fig, ax = plt.subplots(figsize=(10, 6))
        else:
            fig = ax.figure
        ax.plot(trajectory[:, 0], trajectory[:, 2], marker='o', linestyle='-', color='b')
        ax.set_title('Camera Trajectory (Top-Down View)')
        ax.set_xlabel('X Position')
        ax.set_ylabel('Z Position')
        ax.grid(True)
        ax.axis('equal')
        return fig

    def show(self):
        plt.show()
