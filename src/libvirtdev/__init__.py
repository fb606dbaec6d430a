"""
libvirtdev - Provision a dev VM with its own network and storage on libvirt.

Creates and tears down a private network, a directory storage pool, a base
volume uploaded from a local image, a copy-on-write domain volume and the
domain itself, then gets you into the guest over ssh or rsync.
"""

__version__ = "0.3.0"
__author__ = "libvirtdev developers"

from libvirtdev.models import DevVMConfig
from libvirtdev.orchestrator import ResourceOrchestrator

__all__ = ["DevVMConfig", "ResourceOrchestrator", "__version__"]
