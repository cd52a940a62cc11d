"""Version information for efi-image-builder."""

__version__ = "0.3.0"
