# Copyright (c) 2024 Proviso Contributors
# MIT License

"""
Proviso: idempotent provisioning orchestration engine.

Runs ordered, guarded, retryable provisioning steps against named host
groups over SSH or on the local machine.

Features:
    - Guarded tasks with fail-closed fact lookups
    - Fixed-delay retry policies with success predicates
    - Per-group fact stores, groups run concurrently
    - Thin action adapters for packages, firewall, VMs, files and downloads

This package exposes the release metadata; see ``proviso.cli`` for the
command-line entry point.
"""

from __future__ import annotations

from proviso.release import __version__, __author__, __codename__

__all__ = [
    "__version__",
    "__author__",
    "__codename__",
]
