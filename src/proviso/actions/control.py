"""
Proviso control actions

set_fact, debug and fail: actions that touch no endpoint.
"""

import json
import logging

from proviso.actions.base import Action, register_action
from proviso.engine.results import Result

logger = logging.getLogger(__name__)


@register_action
class SetFactAction(Action):
    """
    Hand new facts to the engine.

    Every argument becomes a fact; the engine registers them in the
    group's Fact Store once the task completes.
    """

    name = "set_fact"

    def validate_args(self):
        if not self.args:
            return "set_fact needs at least one fact"
        invalid = [k for k in self.args if not str(k).isidentifier()]
        if invalid:
            return f"invalid fact names: {', '.join(map(str, invalid))}"
        return None

    async def run(self) -> Result:
        facts = dict(self.args)
        return Result.success(
            changed=False,
            msg=f"Set {len(facts)} fact(s)",
            payload={"ansible_facts": facts},
            facts=facts,
        )


@register_action
class DebugAction(Action):
    """Print a message or a fact's value."""

    name = "debug"
    optional_args = {
        "msg": "Hello world!",
        "var": None,
    }

    async def run(self) -> Result:
        var = self.get_arg("var")
        if var:
            value = self.context.variables
            for part in str(var).split("."):
                if isinstance(value, dict) and part in value:
                    value = value[part]
                else:
                    return Result.failure(msg=f"{var}: VARIABLE IS NOT DEFINED!")
            shown = json.dumps(value, indent=2, default=str) if isinstance(value, (dict, list)) else value
            output = f"{var}: {shown}"
        else:
            output = str(self.get_arg("msg"))

        logger.info("[%s] %s", self.context.endpoint.name, output)
        return Result.success(changed=False, msg=output, payload={"msg": output})


@register_action
class FailAction(Action):
    """Fail with a message; usually guarded by ``when``."""

    name = "fail"
    optional_args = {
        "msg": "Failed as requested from task",
    }

    async def run(self) -> Result:
        return Result.failure(msg=str(self.get_arg("msg")))
