import os
import tempfile

# must happen before shipline.config is imported
os.environ['XDG_CONFIG_HOME'] = tempfile.mkdtemp(prefix='shipline-config-')
os.environ['SHIPLINE_DATA_DIR'] = tempfile.mkdtemp(prefix='shipline-data-')

from pathlib import Path

import pytest

from shipline.config import config
from shipline.notify import Notifier
from shipline.runner.gate import Approver
from shipline.schemas import ApprovalDecision, ToolOutput
from shipline.schemas.shipfile import PipelineConfig, Shipfile

MANIFEST = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  template:
    spec:
      containers:
        - name: web
          image: registry.example.com/team/web:old
          ports:
            - containerPort: 8080
"""


class RecordingNotifier(Notifier):
    def __init__(self):
        super().__init__()
        self.runs = []

    async def notify(self, run):
        self.runs.append(run.model_copy(deep=True))


class ScriptedApprover(Approver):
    def __init__(self, answers: dict[str, bool] | None = None):
        self.answers = answers or {}
        self.asked = []

    async def request(self, run, stage_name, gate):
        self.asked.append(stage_name)
        return ApprovalDecision(
            approved=self.answers.get(stage_name, True), actor='tester'
        )


class FakeTools:
    """Stands in for the external binaries; fails commands listed in ``exit_codes``."""

    def __init__(self, exit_codes: dict[str, int] | None = None, manifest: str = MANIFEST):
        self.exit_codes = exit_codes or {}
        self.manifest = manifest
        self.calls = []
        self.inputs = []

    async def __call__(self, *args, cwd, env=None, input=None):
        args = [str(x) for x in args]
        self.calls.append(args)
        self.inputs.append(input)
        subcommand = next(x for x in args[1:] if not x.startswith('-'))
        code = self.exit_codes.get(f'{Path(args[0]).name} {subcommand}', 0)
        if not code and subcommand == 'clone' and self.manifest is not None:
            manifest = Path(cwd) / 'k8s' / 'deployment.yml'
            manifest.parent.mkdir(parents=True, exist_ok=True)
            manifest.write_text(self.manifest)
        return ToolOutput(
            args=args,
            exit_code=code,
            stdout='ok\n',
            stderr='error: something broke\n' if code else '',
        )

    def commands(self) -> list[str]:
        return [
            ' '.join(
                [Path(x[0]).name, next(y for y in x[1:] if not y.startswith('-'))]
            )
            for x in self.calls
        ]


@pytest.fixture()
def pipeline_config() -> PipelineConfig:
    return PipelineConfig(
        repository='https://git.example.com/team/web.git',
        branch='main',
        image='web',
        tag='1.4.0',
        registry='registry.example.com/team',
        deployment='web',
        container='web',
        namespace='prod',
    )


@pytest.fixture()
def shipfile(pipeline_config) -> Shipfile:
    return Shipfile(pipeline=pipeline_config)


@pytest.fixture()
def runs_dir(tmp_path, monkeypatch) -> Path:
    path = tmp_path / 'runs'
    path.mkdir()
    monkeypatch.setattr(config, 'runs_dir', path)
    return path


@pytest.fixture()
def fake_tools(monkeypatch) -> FakeTools:
    tools = FakeTools()
    monkeypatch.setattr('shipline.utils.get_bin', lambda name: name)
    monkeypatch.setattr('shipline.utils.async_run', tools)
    monkeypatch.setattr('shipline.runner.stage.async_run', tools)
    return tools
