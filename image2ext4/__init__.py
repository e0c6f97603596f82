"""Flatten docker images into canonical rootfs tarballs and ext4 images."""

__version__ = "0.1.0"
