"""Map data structures: poses, keyframes, map points and the point cloud."""
