import matplotlib
matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np

from monoslam import MonoSlam
from monoslam.core.map_point import MapPoint
from monoslam.core.point_cloud import PointCloudAccumulator
from monoslam.utils.visualizer import Visualizer


def _snapshot(n):
    cloud = PointCloudAccumulator()
    rng = np.random.default_rng(0)
    points = []
    for i, p in enumerate(rng.uniform(-1, 1, size=(n, 3)) + [0, 0, 3]):
        mp = MapPoint(p, color=rng.uniform(0, 1, 3), confidence=0.9, depth=p[2])
        mp.id = i
        points.append(mp)
    cloud.add_points(points)
    return cloud.get_point_cloud_data()


def test_point_cloud_figure():
    trajectory = np.array([[0.0, 0.0, 0.0], [0.1, 0.0, 0.0]])
    fig = Visualizer(max_points=50).plot_point_cloud(_snapshot(200), trajectory)
    assert isinstance(fig, plt.Figure)
    assert "200 points" in fig.axes[0].get_title()
    plt.close(fig)


def test_empty_cloud_and_trajectory_view():
    visualizer = Visualizer()
    fig = visualizer.plot_point_cloud(_snapshot(0))
    assert isinstance(fig, plt.Figure)
    plt.close(fig)

    fig = visualizer.plot_trajectory_xz([[0, 0, 0], [0.1, 0, 0.2]])
    assert len(fig.axes[0].lines) == 1
    plt.close(fig)


def test_plot_from_point_cloud_sources():
    cloud = PointCloudAccumulator()
    mp = MapPoint([0.0, 0.0, 2.0], confidence=0.9, depth=2.0)
    mp.id = 0
    cloud.add_points([mp])
    visualizer = Visualizer()

    fig = visualizer.plot_source(cloud, color_by_depth=True)
    assert "1 points" in fig.axes[0].get_title()
    plt.close(fig)

    with MonoSlam() as slam:
        fig = visualizer.plot_source(slam, slam.get_trajectory())
    assert "0 points" in fig.axes[0].get_title()
    plt.close(fig)
