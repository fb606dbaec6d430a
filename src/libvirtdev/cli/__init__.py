#!/usr/bin/env python3
"""
libvirtdev CLI package.
"""

from .parsers import build_parser, main
from .utils import DEFAULT_CONFIG_FILE, console

__all__ = ["main", "build_parser", "DEFAULT_CONFIG_FILE", "console"]
