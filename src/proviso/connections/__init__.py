"""
Proviso Connections Module

Connection plugins for local and SSH execution.
"""

from proviso.connections.base import Connection, RunResult, open_connection
from proviso.connections.local import LocalConnection

__all__ = [
    'Connection',
    'RunResult',
    'LocalConnection',
    'open_connection',
]
