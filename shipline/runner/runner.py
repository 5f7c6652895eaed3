import shutil

import logging
import yaml
from pathlib import Path
from pydantic import ValidationError
from yaml import YAMLError

from shipline.config import config
from shipline.const import RUN_ARCHIVE_FILENAME, WORKSPACE_DIRNAME
from shipline.exceptions import ConfigurationError, ToolInvocationError
from shipline.notify import Notifier
from shipline.runner.gate import Approver
from shipline.runner.sequencer import Sequencer, new_run_id
from shipline.runner.stage import StageContext, build_stages
from shipline.schemas import PipelineRun
from shipline.schemas.shipfile import Shipfile
from shipline.utils import async_check_output, docker

logger = logging.getLogger(__name__)


def load_shipfile(file: Path) -> Shipfile:
    if not file.is_file():
        raise ConfigurationError(f'Shipfile {file} not found')
    try:
        return Shipfile.model_validate(yaml.safe_load(file.read_text()))
    except (YAMLError, ValidationError) as e:
        raise ConfigurationError(str(e))


def load_archived_run(run_id: str) -> PipelineRun | None:
    file = config.runs_dir / run_id / RUN_ARCHIVE_FILENAME
    if not file.is_file():
        return None
    return PipelineRun.model_validate_json(file.read_text())


class Runner:
    shipfile: Shipfile
    run_dir: Path
    workdir: Path
    context: StageContext
    sequencer: Sequencer

    def __init__(
        self,
        shipfile: Shipfile,
        approver: Approver,
        notifier: Notifier | None = None,
        run_id: str | None = None,
    ):
        run_id = run_id or new_run_id()
        self.shipfile = shipfile
        self.run_dir = config.runs_dir / run_id
        self.run_dir.mkdir(parents=True)
        self.workdir = self.run_dir / WORKSPACE_DIRNAME
        self.context = StageContext(shipfile.pipeline, self.workdir)
        self.sequencer = Sequencer(
            build_stages(shipfile),
            self.context,
            approver,
            cleanup=self.cleanup,
            notifier=notifier or Notifier.from_config(),
            run_id=run_id,
            gate_timeout=config.gate_timeout,
            on_update=self.archive,
        )

    @property
    def pipeline_run(self) -> PipelineRun:
        return self.sequencer.pipeline_run

    async def run(self) -> PipelineRun:
        self.workdir.mkdir()
        return await self.sequencer.run()

    def abort(self, reason: str = 'aborted by operator') -> bool:
        return self.sequencer.abort(reason)

    def archive(self, run: PipelineRun):
        (self.run_dir / RUN_ARCHIVE_FILENAME).write_text(run.model_dump_json(indent=2))

    async def cleanup(self, run: PipelineRun):
        if self.context.registry_logged_in:
            try:
                await async_check_output(
                    docker(),
                    'logout',
                    self.context.config.registry_host,
                    cwd=self.run_dir,
                )
            except ToolInvocationError as e:
                logger.warning(f'docker logout failed: {e}')
            self.context.registry_logged_in = False
        if self.workdir.exists():
            shutil.rmtree(self.workdir)
        logger.info(f'Cleaned up run {run.run_id}')
