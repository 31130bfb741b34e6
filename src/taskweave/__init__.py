"""taskweave - declarative playbook orchestration over an inventory of hosts.

Quick Start:
    import asyncio
    from taskweave import PlaybookExecutor, RunConfig, load_inventory, load_playbook

    executor = PlaybookExecutor(RunConfig(forks=10))
    results = asyncio.run(executor.run(load_playbook("site.yml"), load_inventory("hosts.ini")))
    print(results.exit_code())
"""

__version__ = "0.1.0"

from taskweave.config import RunConfig, load_config
from taskweave.executor import PlaybookExecutor
from taskweave.inventory import Inventory, load_inventory
from taskweave.playbook import Playbook, load_playbook
from taskweave.results import ResultAggregator

__all__ = [
    "__version__",
    "Inventory",
    "Playbook",
    "PlaybookExecutor",
    "ResultAggregator",
    "RunConfig",
    "load_config",
    "load_inventory",
    "load_playbook",
]
