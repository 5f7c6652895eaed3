import asyncio

import logging
from json import JSONDecodeError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from shipline.auth import verify_token
from shipline.config import config
from shipline.exceptions import AuthError, ConfigurationError
from shipline.runner import Runner, load_archived_run, load_shipfile
from shipline.runner.gate import ApprovalRegistry
from shipline.runner.sequencer import is_run_id
from shipline.schemas import ApprovalDecision

logger = logging.getLogger(__name__)

approvals = ApprovalRegistry()
runners: dict[str, Runner] = {}
_tasks: set[asyncio.Task] = set()


def error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({'error': message}, status_code)


def not_found(run_id: str) -> JSONResponse:
    return error(404, f'Run {run_id} not found')


async def read_json(request: Request) -> dict:
    body = await request.body()
    if not body:
        return {}
    try:
        data = await request.json()
    except JSONDecodeError as e:
        raise ConfigurationError(f'Invalid JSON body: {e}')
    if not isinstance(data, dict):
        raise ConfigurationError('JSON body must be an object')
    return data


def get_actor(request: Request, data: dict) -> str:
    if not config.approval_secret:
        return data.get('actor') or 'anonymous'
    auth = request.headers.get('authorization', '')
    scheme, _, token = auth.partition(' ')
    if scheme.lower() != 'bearer' or not token:
        raise AuthError('Bearer token required')
    return verify_token(token)


def trigger_overrides(data: dict) -> dict:
    overrides = {'branch': data.get('branch'), 'tag': data.get('tag')}
    # push event payloads
    ref = data.get('ref')
    if overrides['branch'] is None and isinstance(ref, str):
        overrides['branch'] = ref.removeprefix('refs/heads/')
    after = data.get('after')
    if overrides['tag'] is None and isinstance(after, str) and after:
        overrides['tag'] = after[:12]
    return overrides


async def trigger_run(request: Request):
    try:
        data = await read_json(request)
        shipfile = load_shipfile(config.shipfile).with_overrides(
            **trigger_overrides(data)
        )
    except (ConfigurationError, ValueError) as e:
        return error(400, str(e))

    runner = Runner(shipfile, approvals)
    run_id = runner.pipeline_run.run_id
    runners[run_id] = runner
    task = asyncio.create_task(runner.run())
    _tasks.add(task)
    task.add_done_callback(_tasks.discard)
    # finished runs are served from their archive
    task.add_done_callback(lambda _: runners.pop(run_id, None))
    logger.info(f'Triggered run {run_id} for {shipfile.pipeline.branch}')
    return JSONResponse({'run_id': run_id}, 202)


async def list_runs(request: Request):
    return JSONResponse(
        [
            {
                'run_id': run_id,
                'status': runner.pipeline_run.status.value,
                'awaiting_gate': runner.pipeline_run.awaiting_gate,
            }
            for run_id, runner in runners.items()
        ]
    )


async def get_run(request: Request):
    run_id = request.path_params['run_id']
    if not is_run_id(run_id):
        return not_found(run_id)
    if runner := runners.get(run_id):
        run = runner.pipeline_run
    elif (run := load_archived_run(run_id)) is None:
        return not_found(run_id)
    return JSONResponse(run.model_dump(mode='json'))


async def list_gates(request: Request):
    run_id = request.path_params['run_id']
    if not is_run_id(run_id):
        return not_found(run_id)
    return JSONResponse([x.as_dict() for x in approvals.pending(run_id)])


async def answer_gate(request: Request):
    run_id = request.path_params['run_id']
    stage_name = request.path_params['stage']
    if not is_run_id(run_id):
        return not_found(run_id)
    try:
        data = await read_json(request)
        actor = get_actor(request, data)
    except ConfigurationError as e:
        return error(400, str(e))
    except AuthError as e:
        return error(401, str(e))
    if not isinstance(data.get('approve'), bool):
        return error(400, '"approve" must be true or false')

    decision = ApprovalDecision(
        approved=data['approve'], actor=actor, reason=data.get('reason')
    )
    if not approvals.resolve(run_id, stage_name, decision):
        return error(404, f'No open gate {stage_name} for run {run_id}')
    return JSONResponse(decision.model_dump())


async def abort_run(request: Request):
    run_id = request.path_params['run_id']
    if not is_run_id(run_id):
        return not_found(run_id)
    try:
        data = await read_json(request)
        actor = get_actor(request, data)
    except ConfigurationError as e:
        return error(400, str(e))
    except AuthError as e:
        return error(401, str(e))
    runner = runners.get(run_id)
    if runner is None:
        if load_archived_run(run_id) is None:
            return not_found(run_id)
        return error(409, f'Run {run_id} already finished')
    reason = data.get('reason') or 'aborted'
    if not runner.abort(f'{reason} by {actor}'):
        return error(409, f'Run {run_id} can no longer be aborted')
    return JSONResponse({'run_id': run_id, 'aborted': True}, 202)


app = Starlette(
    debug=config.debug,
    routes=[
        Route('/runs', trigger_run, methods=['POST']),
        Route('/runs', list_runs, methods=['GET']),
        Route('/runs/{run_id}', get_run, methods=['GET']),
        Route('/runs/{run_id}/gates', list_gates, methods=['GET']),
        Route('/runs/{run_id}/gates/{stage}', answer_gate, methods=['POST']),
        Route('/runs/{run_id}/abort', abort_run, methods=['POST']),
    ],
)
