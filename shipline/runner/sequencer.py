"""Ordered stage execution with approval gates.

A run moves ``pending -> running -> succeeded | failed | aborted``. Whatever
the outcome, the cleanup hook runs exactly once and a single notification is
sent afterwards. A failed stage or a rejected gate halts the run; stages that
were never reached are recorded as skipped.
"""

import asyncio

import logging
import re
import secrets
from typing import Awaitable, Callable

from shipline.notify import Notifier
from shipline.runner.gate import Approver
from shipline.runner.stage import Stage, StageContext
from shipline.schemas import (
    ApprovalDecision,
    FailureKind,
    PipelineRun,
    RunStatus,
    StageResult,
    StageStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

CleanupHook = Callable[[PipelineRun], Awaitable[None]]
UpdateHook = Callable[[PipelineRun], None]


def new_run_id() -> str:
    return utcnow().strftime('%Y%m%d-%H%M%S-') + secrets.token_hex(3)


RUN_ID_RE = re.compile(r'\d{8}-\d{6}-[0-9a-f]{6}')


def is_run_id(value: str) -> bool:
    return RUN_ID_RE.fullmatch(value) is not None


class Sequencer:
    stages: list[Stage]
    context: StageContext
    approver: Approver
    cleanup: CleanupHook | None
    notifier: Notifier
    gate_timeout: float | None
    on_update: UpdateHook | None
    pipeline_run: PipelineRun

    _abort: asyncio.Event
    _abort_reason: str | None
    _final_action_started: bool

    def __init__(
        self,
        stages: list[Stage],
        context: StageContext,
        approver: Approver,
        *,
        cleanup: CleanupHook | None = None,
        notifier: Notifier | None = None,
        run_id: str | None = None,
        gate_timeout: float | None = None,
        on_update: UpdateHook | None = None,
    ):
        names = [x.name for x in stages]
        if len(set(names)) != len(names):
            raise ValueError('Stage names must be unique')
        self.stages = list(stages)
        self.context = context
        self.approver = approver
        self.cleanup = cleanup
        self.notifier = notifier or Notifier()
        self.gate_timeout = gate_timeout
        self.on_update = on_update
        self.pipeline_run = PipelineRun(run_id=run_id or new_run_id(), config=context.config)
        self._abort = asyncio.Event()
        self._abort_reason = None
        self._final_action_started = False

    async def run(self) -> PipelineRun:
        run = self.pipeline_run
        if run.status != RunStatus.pending:
            raise RuntimeError(f'Run {run.run_id} was already started')
        run.status = RunStatus.running
        logger.info(f'Run {run.run_id} started: {", ".join(x.name for x in self.stages)}')
        try:
            self._update()
            await self._run_stages()
        except Exception as e:
            logger.exception(f'Run {run.run_id} crashed')
            self._halt(RunStatus.failed, f'Internal error: {e}')
        finally:
            await self._finish()
        return run

    def abort(self, reason: str = 'aborted by operator') -> bool:
        # once the final action is running there is nothing left to stop
        if (
            self.pipeline_run.status.is_terminal
            or self._abort.is_set()
            or self._final_action_started
        ):
            return False
        logger.warning(f'Aborting run {self.pipeline_run.run_id}: {reason}')
        self._abort_reason = reason
        self._abort.set()
        return True

    async def _run_stages(self):
        for idx, stage in enumerate(self.stages):
            if self._abort.is_set():
                self._halt(RunStatus.aborted, f'{stage.name}: {self._abort_reason}')
                return

            if stage.gate is not None:
                decision = await self._await_gate(stage)
                if not decision.approved:
                    message = f'{stage.name}: not approved'
                    if decision.actor:
                        message += f' by {decision.actor}'
                    if decision.reason:
                        message += f' ({decision.reason})'
                    self.pipeline_run.stages.append(
                        StageResult(
                            name=stage.name,
                            status=StageStatus.rejected,
                            failure=FailureKind.gate_rejected,
                            message=message,
                        )
                    )
                    self._halt(RunStatus.aborted, message)
                    return

            logger.info(f'Run {self.pipeline_run.run_id}: {stage.name}')
            if idx == len(self.stages) - 1:
                self._final_action_started = True
            result = await self._invoke(stage)
            self.pipeline_run.stages.append(result)
            if not result.ok:
                logger.error(f'Run {self.pipeline_run.run_id} failed: {result.message}')
                self._halt(RunStatus.failed, result.message)
                return
            self._update()

        self.pipeline_run.status = RunStatus.succeeded
        self.pipeline_run.message = f'{len(self.stages)} stage(s) succeeded'

    async def _await_gate(self, stage: Stage) -> ApprovalDecision:
        self.pipeline_run.awaiting_gate = stage.name
        self._update()
        request = asyncio.ensure_future(
            self.approver.request(self.pipeline_run, stage.name, stage.gate)
        )
        abort = asyncio.ensure_future(self._abort.wait())
        try:
            done, _ = await asyncio.wait(
                {request, abort},
                timeout=self.gate_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (request, abort):
                if not task.done():
                    task.cancel()
            await asyncio.gather(request, abort, return_exceptions=True)
            self.pipeline_run.awaiting_gate = None

        if request in done:
            return request.result()
        if abort in done:
            return ApprovalDecision(approved=False, reason=self._abort_reason)
        return ApprovalDecision(
            approved=False, reason=f'no answer within {self.gate_timeout:g}s'
        )

    async def _invoke(self, stage: Stage) -> StageResult:
        try:
            result = await stage.action(self.context)
        except Exception as e:
            logger.exception(f'{stage.name} raised')
            return StageResult(
                name=stage.name,
                status=StageStatus.failed,
                failure=FailureKind.internal,
                message=f'{stage.name}: {e!r}',
            )
        if not result.ok and result.message is None:
            result.message = f'{stage.name}: failed with exit code {result.exit_code}'
        return result

    def _halt(self, status: RunStatus, message: str):
        run = self.pipeline_run
        run.status = status
        run.message = message
        reached = {x.name for x in run.stages}
        for stage in self.stages:
            if stage.name not in reached:
                run.stages.append(StageResult(name=stage.name, status=StageStatus.skipped))

    async def _finish(self):
        run = self.pipeline_run
        if not run.status.is_terminal:
            # cancelled from outside, e.g. Ctrl-C
            self._halt(RunStatus.aborted, 'run cancelled')
        if not run.cleanup_done:
            run.cleanup_done = True
            if self.cleanup is not None:
                try:
                    await self.cleanup(run)
                except Exception:
                    logger.exception(f'Cleanup of run {run.run_id} failed')
        run.finished_at = utcnow()
        try:
            self._update()
        except Exception:
            logger.exception(f'Failed to record final state of run {run.run_id}')
        await self.notifier.notify(run)

    def _update(self):
        if self.on_update is not None:
            self.on_update(self.pipeline_run)
