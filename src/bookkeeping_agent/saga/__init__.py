"""Multi-step sagas with ordered execution and reverse-order compensation."""

from .contracts import (
    SAGA_STATUSES,
    STEP_STATUSES,
    CompensationReport,
    Saga,
    SagaContractError,
    SagaStateError,
    SagaStep,
    StepCompensation,
)
from .orchestrator import SagaOrchestrator
from .storage import SagaRepository, SagaStore, SagaStoreError
