import logging

import httpx

from shipline.config import config
from shipline.schemas import PipelineRun

logger = logging.getLogger(__name__)


def summarize(run: PipelineRun) -> str:
    stages = ', '.join(f'{x.name}={x.status.value}' for x in run.stages)
    res = f'Run {run.run_id} {run.status.value} ({run.config.remote_ref})'
    if run.message:
        res += f': {run.message}'
    if stages:
        res += f' [{stages}]'
    return res


def payload(run: PipelineRun) -> dict:
    return {
        'run_id': run.run_id,
        'status': run.status.value,
        'succeeded': run.succeeded,
        'message': run.message,
        'image': run.config.remote_ref,
        'branch': run.config.branch,
        'namespace': run.config.namespace,
        'deployment': run.config.deployment,
        'stages': [
            {'name': x.name, 'status': x.status.value, 'message': x.message}
            for x in run.stages
        ],
        'finished_at': run.finished_at.isoformat() if run.finished_at else None,
    }


class Notifier:
    url: str | None
    timeout: float

    def __init__(self, url: str | None = None, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    @classmethod
    def from_config(cls) -> 'Notifier':
        return cls(config.notify_url, config.notify_timeout)

    async def notify(self, run: PipelineRun):
        logger.log(logging.INFO if run.succeeded else logging.ERROR, summarize(run))
        if not self.url:
            return
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, json=payload(run))
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f'Failed to deliver notification for run {run.run_id}: {e!r}')
