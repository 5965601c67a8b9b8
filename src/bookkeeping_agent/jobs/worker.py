"""Orchestration worker CLI: polls the job queue and drives actions and sagas."""

from __future__ import annotations

import argparse
from collections.abc import Callable
import logging
from pathlib import Path
import time

from bookkeeping_agent.action_layer.dispatcher import ActionDispatcher, DispatchOptions
from bookkeeping_agent.action_layer.service import ActionService
from bookkeeping_agent.action_layer.storage import ActionStore
from bookkeeping_agent.action_layer.targets import BillComHandler, InternalHandler, QuickBooksHandler
from bookkeeping_agent.audit import AuditTrail
from bookkeeping_agent.config import WorkerConfig, load_worker_config
from bookkeeping_agent.integrations.billcom import BILLCOM_BASE_URL, BillComClient
from bookkeeping_agent.integrations.quickbooks import QUICKBOOKS_BASE_URL, QuickBooksClient
from bookkeeping_agent.logging_utils import configure_logging
from bookkeeping_agent.observability import OrchestrationMetrics
from bookkeeping_agent.resilience.circuit_breaker import CIRCUIT_OPEN
from bookkeeping_agent.resilience.layer import ResilienceLayer
from bookkeeping_agent.risk.engine import RiskAssessmentEngine
from bookkeeping_agent.risk.policy import RiskPolicyLoader
from bookkeeping_agent.saga.orchestrator import SagaOrchestrator
from bookkeeping_agent.saga.storage import SagaStore

from .queue import (
    JOB_ACTION_EXECUTION,
    JOB_SAGA_EXECUTION,
    SAGA_COMPENSATE,
    SAGA_EXECUTE,
    SAGA_RESUME,
    Job,
    JobQueue,
    JobQueueError,
)


logger = logging.getLogger("bookkeeping_agent.jobs.worker")


class OrchestrationWorker:
    """Processes one batch per job type per cycle, each job to completion in order."""

    def __init__(
        self,
        *,
        queue: JobQueue,
        actions: ActionService,
        orchestrator: SagaOrchestrator,
        sagas: SagaStore,
        resilience: ResilienceLayer | None = None,
        metrics: OrchestrationMetrics | None = None,
        batch_size: int = 5,
        poll_interval_seconds: float = 2.0,
        metrics_path: Path | None = None,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.queue = queue
        self.actions = actions
        self.orchestrator = orchestrator
        self.sagas = sagas
        self.resilience = resilience
        self.metrics = metrics or OrchestrationMetrics()
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.metrics_path = metrics_path
        self._sleeper = sleeper

    def run_once(self) -> int:
        processed = 0
        for job_type in (JOB_ACTION_EXECUTION, JOB_SAGA_EXECUTION):
            for job in self.queue.dequeue_batch(job_type, self.batch_size):
                self._process_job(job)
                processed += 1
        self._export()
        return processed

    def run_forever(self) -> None:
        while True:
            processed = self.run_once()
            if processed == 0:
                self._sleeper(self.poll_interval_seconds)

    def _process_job(self, job: Job) -> None:
        try:
            if job.job_type == JOB_ACTION_EXECUTION:
                self._run_action_job(job)
            else:
                self._run_saga_job(job)
        except Exception as exc:
            logger.warning(
                "job failed job_id=%s job_type=%s attempt=%s error=%s",
                job.job_id,
                job.job_type,
                job.attempts,
                exc,
                exc_info=True,
            )
            self.queue.fail(job.job_id, f"{type(exc).__name__}: {exc}")
            self.metrics.record_job(job_type=job.job_type, succeeded=False)
            return
        self.queue.complete(job.job_id)
        self.metrics.record_job(job_type=job.job_type, succeeded=True)

    def _run_action_job(self, job: Job) -> None:
        action_id = _required(job, "action_id")
        outcome = self.actions.process(action_id)
        logger.info(
            "action job processed job_id=%s action_id=%s outcome=%s reason=%s",
            job.job_id,
            action_id,
            outcome.status,
            outcome.reason,
        )

    def _run_saga_job(self, job: Job) -> None:
        saga_id = _required(job, "saga_id")
        action = str(job.payload.get("action") or SAGA_EXECUTE)
        saga = self.sagas.load(saga_id)
        if action == SAGA_EXECUTE:
            saga = self.orchestrator.execute(saga)
        elif action == SAGA_RESUME:
            approved_by = str(job.payload.get("approved_by") or "").strip() or None
            saga = self.orchestrator.resume(saga, approved_by=approved_by)
        elif action == SAGA_COMPENSATE:
            saga = self.orchestrator.compensate(saga).saga
        else:
            raise JobQueueError(f"unknown saga job action: {action!r}")
        logger.info(
            "saga job processed job_id=%s saga_id=%s action=%s status=%s step=%s/%s",
            job.job_id,
            saga.id,
            action,
            saga.status,
            saga.current_step,
            saga.total_steps,
        )

    def _export(self) -> None:
        open_circuits = 0
        if self.resilience is not None:
            open_circuits = sum(1 for item in self.resilience.snapshot().values() if item.state == CIRCUIT_OPEN)
        health = self.metrics.evaluate_health(open_circuits=open_circuits)
        if health.state != "GREEN":
            logger.warning("orchestration health state=%s reasons=%s", health.state, ",".join(health.reason_codes))
        if self.metrics_path is not None:
            self.metrics.export(output_path=self.metrics_path)


def build_worker(config: WorkerConfig) -> OrchestrationWorker:
    metrics = OrchestrationMetrics()
    resilience = ResilienceLayer(
        breaker_configs=config.breaker_configs,
        retry_policy=config.retry_policy,
        on_state_change=metrics.record_circuit_transition,
    )
    engine = RiskAssessmentEngine.from_loader(
        RiskPolicyLoader(config.policy_path),
        skip_rules=config.skip_rules,
        strict_mode=config.strict_mode,
    )
    quickbooks = QuickBooksClient(
        realm_id=config.quickbooks.realm_id,
        access_token=config.quickbooks.access_token,
        base_url=config.quickbooks.base_url or QUICKBOOKS_BASE_URL,
        timeout_seconds=config.quickbooks.timeout_seconds,
    )
    billcom = BillComClient(
        dev_key=config.billcom.dev_key,
        session_id=config.billcom.session_id,
        base_url=config.billcom.base_url or BILLCOM_BASE_URL,
        timeout_seconds=config.billcom.timeout_seconds,
    )
    if billcom.session_id is None and config.billcom.user_name and config.billcom.password and config.billcom.org_id:
        billcom.login(config.billcom.user_name, config.billcom.password, config.billcom.org_id)
    dispatcher = ActionDispatcher(
        [QuickBooksHandler(quickbooks), BillComHandler(billcom), InternalHandler()],
        resilience,
        risk_engine=engine,
        options=DispatchOptions(dry_run=config.dry_run, skip_approval_check=config.skip_approval_check),
        metrics=metrics,
    )
    audit = AuditTrail()
    sagas = SagaStore(locator=config.saga_store_locator)
    return OrchestrationWorker(
        queue=JobQueue(locator=config.queue_locator),
        actions=ActionService(ActionStore(locator=config.action_store_locator), dispatcher, audit=audit),
        orchestrator=SagaOrchestrator(
            dispatcher,
            sagas,
            audit=audit,
            metrics=metrics,
            dispatch_on_resume=config.dispatch_on_resume,
        ),
        sagas=sagas,
        resilience=resilience,
        metrics=metrics,
        batch_size=config.batch_size,
        poll_interval_seconds=config.poll_interval_seconds,
        metrics_path=config.metrics_path,
    )


def _required(job: Job, key: str) -> str:
    value = str(job.payload.get(key) or "").strip()
    if not value:
        raise JobQueueError(f"{job.job_type} job {job.job_id} missing {key}")
    return value


def main() -> None:
    parser = argparse.ArgumentParser(description="Bookkeeping orchestration worker")
    parser.add_argument("--profile", required=True, help="Path to worker profile YAML")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    args = parser.parse_args()

    config = load_worker_config(Path(args.profile))
    configure_logging(config.log_level, list(config.log_paths))
    worker = build_worker(config)
    if args.once:
        processed = worker.run_once()
        logger.info("orchestration worker processed=%s", processed)
        return
    worker.run_forever()


if __name__ == "__main__":
    main()
