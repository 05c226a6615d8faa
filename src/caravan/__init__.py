"""caravan - deployment orchestration for fleets of remote hosts.

Drives hosts grouped by role through scripted shell operations (source
checkout, symlink swap, process restart), keeping release history and
rolling back completed steps when a later one fails.

Quick Start:
    from caravan import Deployment, load_config, load_inventory

    deployment = Deployment(load_config("deploy.yml"), load_inventory("hosts.yml"))
    try:
        await deployment.execute("deploy")
    finally:
        await deployment.close()
"""

__version__ = "0.1.0"

from caravan.config import DeployConfig, load_config
from caravan.dispatcher import Dispatcher
from caravan.inventory import Inventory, load_inventory
from caravan.recipes import Deployment
from caravan.transaction import Transaction, TransactionState

__all__ = [
    "__version__",
    "DeployConfig",
    "Deployment",
    "Dispatcher",
    "Inventory",
    "Transaction",
    "TransactionState",
    "load_config",
    "load_inventory",
]
