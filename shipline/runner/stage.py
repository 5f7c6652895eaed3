import logging
import os
from pathlib import Path
from typing import Awaitable, Callable

from shipline.const import BUILD, CHECKOUT, DEPLOY, PUSH, SCAN
from shipline.exceptions import ManifestError
from shipline.runner.gate import ApprovalGate
from shipline.runner.manifest import edit_manifest
from shipline.schemas import FailureKind, StageResult, StageStatus, ToolOutput
from shipline.schemas.shipfile import PipelineConfig, Shipfile
from shipline.utils import async_run, docker, git, kubectl, trivy

logger = logging.getLogger(__name__)


class StageContext:
    config: PipelineConfig
    workdir: Path
    registry_logged_in: bool

    def __init__(self, config: PipelineConfig, workdir: Path):
        self.config = config
        self.workdir = workdir
        self.registry_logged_in = False


StageAction = Callable[[StageContext], Awaitable[StageResult]]


class Stage:
    name: str
    action: StageAction
    gate: ApprovalGate | None

    def __init__(self, name: str, action: StageAction, gate: ApprovalGate | None = None):
        self.name = name
        self.action = action
        self.gate = gate

    def __repr__(self):
        return f'Stage({self.name!r}, gate={self.gate!r})'


def failed(
    name: str,
    message: str,
    failure: FailureKind = FailureKind.tool_invocation,
    output: ToolOutput | None = None,
) -> StageResult:
    return StageResult(
        name=name,
        status=StageStatus.failed,
        exit_code=output.exit_code if output else None,
        stdout=output.stdout if output else '',
        stderr=output.stderr if output else '',
        failure=failure,
        message=f'{name}: {message}',
    )


class _Commands:
    """Runs a stage's commands one after another, stopping at the first failure."""

    name: str
    ctx: StageContext
    outputs: list[ToolOutput]

    def __init__(self, name: str, ctx: StageContext):
        self.name = name
        self.ctx = ctx
        self.outputs = []

    async def run(self, *args: str, input: str | None = None) -> ToolOutput:
        res = await async_run(*args, cwd=self.ctx.workdir, input=input)
        self.outputs.append(res)
        return res

    def _joined(self, attr: str) -> str:
        return '\n'.join(x for x in (getattr(o, attr) for o in self.outputs) if x)

    def failure(
        self, res: ToolOutput, failure: FailureKind = FailureKind.tool_invocation
    ) -> StageResult:
        tool = Path(res.args[0]).name
        message = f'{tool} exited with code {res.exit_code}'
        if error_line := res.error_line:
            message += f': {error_line}'
        return StageResult(
            name=self.name,
            status=StageStatus.failed,
            exit_code=res.exit_code,
            stdout=self._joined('stdout'),
            stderr=self._joined('stderr'),
            failure=failure,
            message=f'{self.name}: {message}',
        )

    def success(self) -> StageResult:
        return StageResult(
            name=self.name,
            status=StageStatus.succeeded,
            exit_code=0,
            stdout=self._joined('stdout'),
            stderr=self._joined('stderr'),
        )


async def checkout(ctx: StageContext) -> StageResult:
    cmds = _Commands(CHECKOUT, ctx)
    res = await cmds.run(
        git(),
        'clone',
        '--depth',
        '1',
        '--branch',
        ctx.config.branch,
        ctx.config.repository,
        '.',
    )
    if res.exit_code:
        return cmds.failure(res)
    return cmds.success()


async def build(ctx: StageContext) -> StageResult:
    cmds = _Commands(BUILD, ctx)
    res = await cmds.run(
        docker(),
        'build',
        '-f',
        ctx.config.dockerfile,
        '-t',
        ctx.config.local_ref,
        ctx.config.context,
    )
    if res.exit_code:
        return cmds.failure(res)
    return cmds.success()


async def scan(ctx: StageContext) -> StageResult:
    cmds = _Commands(SCAN, ctx)
    res = await cmds.run(
        trivy(),
        'image',
        '--exit-code',
        '1',
        '--no-progress',
        '--severity',
        ','.join(ctx.config.scan_severity),
        ctx.config.local_ref,
    )
    if res.exit_code:
        return cmds.failure(res, FailureKind.scan)
    return cmds.success()


async def push(ctx: StageContext) -> StageResult:
    cfg = ctx.config
    cmds = _Commands(PUSH, ctx)
    if cfg.registry_username:
        password = os.getenv(cfg.registry_password_env)
        if not password:
            logger.error(f'{cfg.registry_password_env} is empty, cannot log in')
            return failed(
                PUSH, f'registry password variable {cfg.registry_password_env} is not set'
            )
        res = await cmds.run(
            docker(),
            'login',
            cfg.registry_host,
            '-u',
            cfg.registry_username,
            '--password-stdin',
            input=password,
        )
        if res.exit_code:
            return cmds.failure(res)
        ctx.registry_logged_in = True

    for args in (
        ('tag', cfg.local_ref, cfg.remote_ref),
        ('push', cfg.remote_ref),
    ):
        res = await cmds.run(docker(), *args)
        if res.exit_code:
            return cmds.failure(res)
    return cmds.success()


def kubectl_args(cfg: PipelineConfig) -> list[str]:
    res = [kubectl()]
    if cfg.kubeconfig:
        res.extend(('--kubeconfig', cfg.kubeconfig))
    if cfg.kube_context:
        res.extend(('--context', cfg.kube_context))
    return res


async def deploy(ctx: StageContext) -> StageResult:
    cfg = ctx.config
    cmds = _Commands(DEPLOY, ctx)
    try:
        edit_manifest(ctx.workdir / cfg.manifest, cfg.remote_ref, cfg.container)
    except ManifestError as e:
        return failed(DEPLOY, str(e))

    for args in (
        ('apply', '-f', cfg.manifest, '-n', cfg.namespace),
        ('rollout', 'status', f'deployment/{cfg.deployment}', '-n', cfg.namespace),
    ):
        res = await cmds.run(*kubectl_args(cfg), *args)
        if res.exit_code:
            return cmds.failure(res)
    return cmds.success()


ACTIONS: dict[str, StageAction] = {
    CHECKOUT: checkout,
    BUILD: build,
    SCAN: scan,
    PUSH: push,
    DEPLOY: deploy,
}


def build_stages(shipfile: Shipfile) -> list[Stage]:
    res = []
    for name in shipfile.stages:
        prompt = shipfile.gate_prompt(name)
        res.append(
            Stage(name, ACTIONS[name], ApprovalGate(prompt) if prompt else None)
        )
    return res
