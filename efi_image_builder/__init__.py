"""Build bootable EFI disk images from compressed root-filesystem archives."""

from .__version__ import __version__


__all__ = ["__version__"]
