"""Visual odometry building blocks: features, two-view geometry, PnP, ICP, tracking, direct method and bundle adjustment."""

__version__ = "0.1.0"