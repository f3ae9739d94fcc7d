# Copyright (c) 2024 Proviso Contributors
# MIT License

"""Proviso release metadata."""

from __future__ import annotations

__version__ = "0.1.0"
__author__ = "Proviso Contributors"
__codename__ = "Bastion"

# Version info tuple for programmatic comparison
VERSION_INFO = (0, 1, 0)
