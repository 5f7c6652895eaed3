import asyncio

import click
import getpass
import logging
import threading

from shipline.schemas import ApprovalDecision, PipelineRun

logger = logging.getLogger(__name__)


class ApprovalGate:
    prompt: str

    def __init__(self, prompt: str):
        self.prompt = prompt

    def __repr__(self):
        return f'ApprovalGate({self.prompt!r})'


class Approver:
    """Someone (or something) outside the run that answers approval gates.

    ``request`` suspends until a decision is available. It may be cancelled
    by the sequencer when the run is aborted or the gate times out, so
    implementations must release whatever they hold on cancellation.
    """

    async def request(
        self, run: PipelineRun, stage_name: str, gate: ApprovalGate
    ) -> ApprovalDecision:
        raise NotImplementedError


class AutoApprover(Approver):
    approve: bool

    def __init__(self, approve: bool = True):
        self.approve = approve

    async def request(self, run, stage_name, gate):
        logger.info(
            f'{"Approving" if self.approve else "Rejecting"} {stage_name} of run {run.run_id}'
        )
        return ApprovalDecision(approved=self.approve, actor='auto')


class ConsoleApprover(Approver):
    """Asks on the terminal.

    The prompt blocks a daemon thread rather than the default executor, so a
    gate that times out or is aborted leaves nothing for ``asyncio.run`` to
    wait on at shutdown.
    """

    async def request(self, run, stage_name, gate):
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def deliver(answer: bool | Exception):
            if future.done():
                return
            if isinstance(answer, Exception):
                future.set_exception(answer)
            else:
                future.set_result(answer)

        def ask():
            try:
                answer = click.confirm(f'[{run.run_id}] {gate.prompt}', default=False)
            except click.Abort:
                answer = False
            except Exception as e:
                answer = e
            try:
                loop.call_soon_threadsafe(deliver, answer)
            except RuntimeError:
                # loop closed, the run ended without this answer
                logger.debug(f'Dropped late answer for {stage_name} of run {run.run_id}')

        threading.Thread(
            target=ask, name=f'approve-{run.run_id}-{stage_name}', daemon=True
        ).start()
        approved = await future
        return ApprovalDecision(approved=approved, actor=getpass.getuser())


class PendingApproval:
    run_id: str
    stage_name: str
    prompt: str
    future: asyncio.Future

    def __init__(self, run_id: str, stage_name: str, prompt: str, future: asyncio.Future):
        self.run_id = run_id
        self.stage_name = stage_name
        self.prompt = prompt
        self.future = future

    def as_dict(self) -> dict:
        return {'run_id': self.run_id, 'stage': self.stage_name, 'prompt': self.prompt}


class ApprovalRegistry(Approver):
    _pending: dict[tuple[str, str], PendingApproval]

    def __init__(self):
        self._pending = {}

    async def request(self, run, stage_name, gate):
        key = (run.run_id, stage_name)
        if key in self._pending:
            raise ValueError(f'Gate {stage_name} of run {run.run_id} is already open')
        future = asyncio.get_running_loop().create_future()
        self._pending[key] = PendingApproval(run.run_id, stage_name, gate.prompt, future)
        logger.info(f'Run {run.run_id} is waiting for approval of {stage_name}')
        try:
            return await future
        finally:
            del self._pending[key]

    def pending(self, run_id: str | None = None) -> list[PendingApproval]:
        return [
            x for x in self._pending.values() if run_id is None or x.run_id == run_id
        ]

    def resolve(self, run_id: str, stage_name: str, decision: ApprovalDecision) -> bool:
        pending = self._pending.get((run_id, stage_name))
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(decision)
        logger.info(
            f'{stage_name} of run {run_id} '
            f'{"approved" if decision.approved else "rejected"} by {decision.actor}'
        )
        return True
