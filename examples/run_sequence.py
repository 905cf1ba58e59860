import argparse
import logging

import numpy as np

from monoslam import MonoSlam, TrackingStatus, init_logging
from monoslam.utils.image_loader import ImageLoader
from monoslam.utils.visualizer import Visualizer

logger = logging.getLogger('run_sequence')


def main():
    parser = argparse.ArgumentParser(description='Run monocular SLAM on an image sequence')
    parser.add_argument('--sequence', type=str, required=True, help='Path to image sequence')
    parser.add_argument('--settings', type=str, default=None, help='YAML settings file')
    parser.add_argument('--max-frames', type=int, default=None, help='Stop after this many frames')
    parser.add_argument('--save', type=str, default=None, help='Write the point cloud to this .npz file')
    parser.add_argument('--no-show', action='store_true', help='Do not open the plot window')
    parser.add_argument('--color-by-depth', action='store_true', help='Color points by depth in the plot')
    parser.add_argument('--verbose', action='store_true')
    args = parser.parse_args()

    init_logging(logging.DEBUG if args.verbose else logging.INFO)

    loader = ImageLoader(args.sequence)
    slam = MonoSlam(camera_intrinsics=loader.intrinsics(), settings_file=args.settings)

    lost = 0
    with slam:
        for frame_id, (image, timestamp) in enumerate(loader):
            if args.max_frames is not None and frame_id >= args.max_frames:
                break
            result = slam.process_frame(image, timestamp)
            if not result.is_tracking:
                lost += 1
            if result.status is TrackingStatus.DEGENERATE:
                logger.warning("Frame %d: tracking degenerate", frame_id)
        slam.wait_for_refinement()
        snapshot = slam.get_point_cloud()
        trajectory = slam.get_trajectory()

    logger.info("Keyframes: %d, points: %d, frames without pose: %d",
                len(trajectory), snapshot.count, lost)

    if args.save:
        np.savez(args.save, trajectory=trajectory, **snapshot.as_dict())
        logger.info("Saved point cloud to %s", args.save)

    if not args.no_show:
        visualizer = Visualizer()
        visualizer.plot_source(slam, trajectory, color_by_depth=args.color_by_depth)
        visualizer.show()


if __name__ == "__main__":
    main()
