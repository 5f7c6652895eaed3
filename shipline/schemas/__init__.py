from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field

from shipline.schemas.shipfile import PipelineConfig


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    pending = 'pending'
    running = 'running'
    succeeded = 'succeeded'
    failed = 'failed'
    aborted = 'aborted'

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.succeeded, RunStatus.failed, RunStatus.aborted)


class StageStatus(str, Enum):
    succeeded = 'succeeded'
    failed = 'failed'
    rejected = 'rejected'
    skipped = 'skipped'


class FailureKind(str, Enum):
    tool_invocation = 'tool_invocation'
    scan = 'scan'
    gate_rejected = 'gate_rejected'
    internal = 'internal'


class ToolOutput(BaseModel):
    args: list[str]
    exit_code: int
    stdout: str
    stderr: str

    @property
    def error_line(self) -> str:
        for text in (self.stderr, self.stdout):
            lines = [x for x in text.strip().splitlines() if x.strip()]
            if lines:
                return lines[-1].strip()
        return ''


class StageResult(BaseModel):
    name: str
    status: StageStatus
    exit_code: int | None = None
    stdout: str = ''
    stderr: str = ''
    failure: FailureKind | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == StageStatus.succeeded


class ApprovalDecision(BaseModel):
    approved: bool
    actor: str | None = None
    reason: str | None = None


class PipelineRun(BaseModel):
    run_id: str
    config: PipelineConfig
    status: RunStatus = RunStatus.pending
    stages: list[StageResult] = Field(default_factory=list)
    awaiting_gate: str | None = None
    message: str | None = None
    cleanup_done: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.succeeded
