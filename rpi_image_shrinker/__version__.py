"""Version information for rpi-image-shrinker."""

__version__ = "0.3.0"
