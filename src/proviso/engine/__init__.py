"""
Proviso Engine Module

Task model, inventory, conditions, fact store and retry controller. The
scheduler and runner live in ``proviso.engine.scheduler`` and
``proviso.engine.runner``.
"""

from proviso.engine.conditions import Condition, evaluate, parse_condition
from proviso.engine.errors import (
    ProvisoError,
    ParseError,
    MalformedTaskError,
    UnknownGroupError,
    UnreachableHostError,
    UnresolvedFactError,
)
from proviso.engine.facts import FactStore
from proviso.engine.inventory import Endpoint, InventoryManager, ProbePolicy
from proviso.engine.playbook import Play, PlaybookParser
from proviso.engine.results import GroupOutcome, Result, RunReport, TaskState
from proviso.engine.retry import RetryController, RetryPolicy
from proviso.engine.task import OnError, Task, load

__all__ = [
    'Condition',
    'evaluate',
    'parse_condition',
    'ProvisoError',
    'ParseError',
    'MalformedTaskError',
    'UnknownGroupError',
    'UnreachableHostError',
    'UnresolvedFactError',
    'FactStore',
    'Endpoint',
    'InventoryManager',
    'ProbePolicy',
    'Play',
    'PlaybookParser',
    'GroupOutcome',
    'Result',
    'RunReport',
    'TaskState',
    'RetryController',
    'RetryPolicy',
    'OnError',
    'Task',
    'load',
]
