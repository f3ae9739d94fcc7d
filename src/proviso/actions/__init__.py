"""
Proviso Actions

Built-in action adapters behind the Action Invoker.
"""

from proviso.actions.base import Action, ActionContext, ActionInvoker, list_actions, register_action

__all__ = [
    'Action',
    'ActionContext',
    'ActionInvoker',
    'list_actions',
    'register_action',
]
