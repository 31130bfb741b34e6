"""Task graph construction for taskweave.

A play's task list is expanded per host into concrete ``TaskInstance``
objects: one per loop item (or one for a task without a loop), each with its
own variable scope, its ``when`` result and its rendered arguments.

Expansion is lazy with respect to facts: the executor expands a task only
when it reaches it on a host, so loop sources and conditions see facts
registered by earlier tasks.
"""

import glob
import logging
from dataclasses import dataclass, field
from typing import Any

from .config import RunConfig
from .exceptions import ModuleExecutionError, TaskweaveError
from .playbook import Play, Task
from .variables import Precedence, ScopeStack

logger = logging.getLogger(__name__)

NO_ITEMS_MSG = "No items in loop source"
CONDITION_FALSE_MSG = "Conditional result was False"


@dataclass
class TaskInstance:
    """One concrete invocation of a task on one host.

    Attributes:
        task: The task this instance was expanded from
        ident: Position of the instance within the play, e.g. "3" or "3[1]"
        label: Display name (task name plus loop item, if any)
        scope: Variable scope the instance was evaluated in
        args: Rendered module arguments (empty when skipped or in error)
        loop_item: Bound loop item, if looping
        loop_index: Index of the loop item, if looping
        skip_reason: Set when the instance must not run
        error: Set when evaluating the instance failed (it is reported failed)
    """

    task: Task
    ident: str
    label: str
    scope: ScopeStack | None = None
    args: dict[str, Any] = field(default_factory=dict)
    loop_item: Any = None
    loop_index: int | None = None
    skip_reason: str | None = None
    error: TaskweaveError | None = None

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None

    @property
    def failed(self) -> bool:
        return self.error is not None


def _item_label(item: Any) -> str:
    if isinstance(item, dict) and "name" in item:
        return str(item["name"])
    return str(item)


class TaskGraphBuilder:
    """Expands tasks into task instances against a host's scope stack.

    Example:
        >>> builder = TaskGraphBuilder(RunConfig())
        >>> [i.label for i in builder.expand(task, host_stack, "0")]
        ['Install packages (item=httpd)', 'Install packages (item=php)']
    """

    def __init__(self, config: RunConfig | None = None) -> None:
        self.config = config or RunConfig()

    def task_scope(self, task: Task, scope: ScopeStack) -> ScopeStack:
        """Derive the scope a task is evaluated in (adds task vars)."""
        if task.vars:
            return scope.child(f"task:{task.name}", Precedence.TASK, task.vars)
        return scope.child()

    def loop_items(self, task: Task, scope: ScopeStack) -> list[Any]:
        """Evaluate a task's loop source to a list of items.

        A fileglob source yields the sorted matching paths; a template
        source must render to a list.

        Raises:
            ModuleExecutionError: If the loop source is not a list
            UndefinedVariableError: If the loop source references undefined names
        """
        if task.fileglob is not None:
            pattern = scope.render(task.fileglob)
            return sorted(glob.glob(str(pattern)))

        items = scope.render(task.loop)
        if isinstance(items, tuple):
            items = list(items)
        if not isinstance(items, list):
            raise ModuleExecutionError(
                f"Invalid data passed to 'loop', it requires a list, got {type(items).__name__}",
                action=task.action,
            )
        return items

    def expand(self, task: Task, scope: ScopeStack, ident: str = "0") -> list[TaskInstance]:
        """Expand one task into its instances for one host.

        Evaluation errors never raise: the affected instance carries the
        error and is reported as failed.

        Args:
            task: Task to expand
            scope: The host's scope stack
            ident: Position of the task within its play

        Returns:
            Instances in loop order; a single skipped instance when the loop
            source is empty
        """
        task_scope = self.task_scope(task, scope)
        if not task.has_loop:
            return [self._instance(task, task_scope, ident, task.name)]

        try:
            items = self.loop_items(task, task_scope)
        except TaskweaveError as e:
            return [TaskInstance(task=task, ident=ident, label=task.name, scope=task_scope, error=e)]

        if not items:
            logger.debug(f"Task '{task.name}' has an empty loop source")
            return [
                TaskInstance(
                    task=task, ident=ident, label=task.name, scope=task_scope, skip_reason=NO_ITEMS_MSG
                )
            ]

        loop_var = task.loop_var or self.config.loop_var
        instances = []
        for index, item in enumerate(items):
            bound = {loop_var: item}
            if task.index_var:
                bound[task.index_var] = index
            item_scope = task_scope.child(f"loop:{task.name}", Precedence.LOOP, bound)
            instance = self._instance(
                task,
                item_scope,
                f"{ident}[{index}]",
                f"{task.name} (item={_item_label(item)})",
            )
            instance.loop_item = item
            instance.loop_index = index
            instances.append(instance)
        return instances

    def _instance(self, task: Task, scope: ScopeStack, ident: str, label: str) -> TaskInstance:
        instance = TaskInstance(task=task, ident=ident, label=label, scope=scope)
        try:
            if not scope.evaluate(task.when):
                instance.skip_reason = CONDITION_FALSE_MSG
                return instance
            instance.args = scope.render(task.args)
        except TaskweaveError as e:
            instance.error = e
        return instance

    def build(self, play: Play, scope: ScopeStack) -> list[TaskInstance]:
        """Expand every task of a play against one scope, in order.

        This is a static view: facts set while executing are not applied.
        """
        instances: list[TaskInstance] = []
        for index, task in enumerate(play.tasks):
            if task.is_flush:
                continue
            instances.extend(self.expand(task, scope, str(index)))
        return instances
