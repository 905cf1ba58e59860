"""Frame-to-frame front end: detection, tracking and relative pose."""
