from asyncio import create_subprocess_exec

import logging
import os
import subprocess
from functools import cache
from pathlib import Path
from subprocess import DEVNULL, PIPE

from shipline.exceptions import ToolInvocationError
from shipline.schemas import ToolOutput

logger = logging.getLogger(__name__)


@cache
def get_bin(name: str) -> str:
    try:
        abspath = subprocess.check_output(['which', name], stderr=DEVNULL)
    except (subprocess.CalledProcessError, FileNotFoundError):
        logger.warning(f'{name} not found in PATH')
        return name
    abspath = abspath.decode().strip()
    if Path(abspath).is_symlink():
        return os.readlink(abspath)
    else:
        return name


def git() -> str:
    return get_bin('git')


def docker() -> str:
    return get_bin('docker')


def trivy() -> str:
    return get_bin('trivy')


def kubectl() -> str:
    return get_bin('kubectl')


async def async_run(
    *args: str | Path,
    cwd: Path | str,
    env: dict[str, str] | None = None,
    input: str | None = None,
) -> ToolOutput:
    args = tuple(str(x) for x in args)
    logger.debug(f'Running {args}')
    if env is not None:
        env = {**os.environ, **env}
    p = await create_subprocess_exec(
        *args,
        cwd=cwd,
        stdin=PIPE if input is not None else DEVNULL,
        stdout=PIPE,
        stderr=PIPE,
        env=env,
    )
    stdout, stderr = await p.communicate(
        input.encode() if input is not None else None
    )
    if p.returncode:
        logger.error(f'{args[0]} exited with code {p.returncode}')
    return ToolOutput(
        args=list(args),
        exit_code=p.returncode,
        stdout=stdout.decode(errors='replace'),
        stderr=stderr.decode(errors='replace'),
    )


async def async_check_output(*args: str | Path, cwd: Path | str, **kwargs) -> str:
    res = await async_run(*args, cwd=cwd, **kwargs)
    if res.exit_code:
        raise ToolInvocationError(tuple(res.args), res.exit_code, res.stderr)
    return res.stdout
