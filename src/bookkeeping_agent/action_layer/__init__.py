"""Action records, target routing, dispatch and lifecycle service."""

from .contracts import (
    ACTION_STATUSES,
    ERROR_KINDS,
    REVERSIBILITY_LEVELS,
    ActionContractError,
    ActionDispatchError,
    ActionRecord,
    ActionResult,
    ActionTransitionError,
    Compensation,
    ProposedAction,
)
from .dispatcher import ActionDispatcher, DispatchOptions
from .service import ActionService, ProcessOutcome
from .storage import ActionStore, ActionStoreError
from .targets import BillComHandler, InternalHandler, QuickBooksHandler, TargetHandler

__all__ = [
    "ACTION_STATUSES",
    "ERROR_KINDS",
    "REVERSIBILITY_LEVELS",
    "ActionContractError",
    "ActionDispatchError",
    "ActionDispatcher",
    "ActionRecord",
    "ActionResult",
    "ActionService",
    "ActionStore",
    "ActionStoreError",
    "ActionTransitionError",
    "BillComHandler",
    "Compensation",
    "DispatchOptions",
    "InternalHandler",
    "ProcessOutcome",
    "ProposedAction",
    "QuickBooksHandler",
    "TargetHandler",
]
