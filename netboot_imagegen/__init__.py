"""Netboot Image Generator - provisioning pipeline for PXE-deployable images.

This package fetches and verifies Clonezilla Live assets, assembles
multi-partition bootable disk images, generates transport-aware GRUB
boot entries and verifies the resulting artifacts.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
