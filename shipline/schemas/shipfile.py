from pathlib import Path
from string import Formatter
from pydantic import BaseModel, ConfigDict, StringConstraints, field_validator
from typing import Annotated

from shipline.const import DEFAULT_GATES, DEFAULT_SCAN_SEVERITY, STAGE_ORDER


def _relative_path(v: str) -> str:
    basedir = Path('/workspace')
    resolved = (basedir / v).resolve()
    if not resolved.is_relative_to(basedir):
        raise ValueError('path must be relative to the workspace')
    return v


RelativePath = Annotated[str, StringConstraints(min_length=1)]

PROMPT_FIELDS = {'image', 'registry', 'remote', 'namespace', 'deployment', 'branch'}


class PipelineConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    repository: str
    branch: str = 'main'

    image: Annotated[str, StringConstraints(pattern=r'^[a-z0-9][a-z0-9._/-]*$')]
    tag: Annotated[str, StringConstraints(pattern=r'^[\w][\w.-]{0,127}$')] = 'latest'
    dockerfile: RelativePath = 'Dockerfile'
    context: RelativePath = '.'
    scan_severity: tuple[str, ...] = DEFAULT_SCAN_SEVERITY

    registry: str
    registry_username: str | None = None
    # name of the environment variable holding the registry password
    registry_password_env: str = 'REGISTRY_PASSWORD'

    kubeconfig: str | None = None
    kube_context: str | None = None
    deployment: str
    container: str | None = None
    namespace: str = 'default'
    manifest: RelativePath = 'k8s/deployment.yml'

    # noinspection PyNestedDecorators
    @field_validator('dockerfile', 'context', 'manifest')
    @classmethod
    def v_relative(cls, v: str):
        return _relative_path(v)

    # noinspection PyNestedDecorators
    @field_validator('registry')
    @classmethod
    def v_registry(cls, v: str):
        return v.rstrip('/')

    # noinspection PyNestedDecorators
    @field_validator('scan_severity')
    @classmethod
    def v_scan_severity(cls, v: tuple[str, ...]):
        if not v:
            raise ValueError('at least one severity is required')
        return tuple(x.upper() for x in v)

    @property
    def local_ref(self) -> str:
        return f'{self.image}:{self.tag}'

    @property
    def remote_ref(self) -> str:
        return f'{self.registry}/{self.image}:{self.tag}'

    @property
    def registry_host(self) -> str:
        return self.registry.split('/', 1)[0]


class Shipfile(BaseModel):
    pipeline: PipelineConfig
    stages: list[str] = list(STAGE_ORDER)
    # stage name -> approval prompt, null disables the gate
    gates: dict[str, str | None] = DEFAULT_GATES

    # noinspection PyNestedDecorators
    @field_validator('stages')
    @classmethod
    def v_stages(cls, v: list[str]):
        unknown = [x for x in v if x not in STAGE_ORDER]
        if unknown:
            raise ValueError(f'unknown stages: {", ".join(unknown)}')
        if len(set(v)) != len(v):
            raise ValueError('stages must not repeat')
        if not v:
            raise ValueError('at least one stage is required')
        return v

    # noinspection PyNestedDecorators
    @field_validator('gates', mode='before')
    @classmethod
    def v_gates(cls, v: dict[str, str | None] | None):
        v = {**DEFAULT_GATES, **(v or {})}
        unknown = [x for x in v if x not in STAGE_ORDER]
        if unknown:
            raise ValueError(f'gates reference unknown stages: {", ".join(unknown)}')
        for prompt in v.values():
            if prompt is None:
                continue
            fields = {name for _, name, _, _ in Formatter().parse(prompt) if name}
            if bad := fields - PROMPT_FIELDS:
                raise ValueError(f'unknown prompt fields: {", ".join(sorted(bad))}')
        return v

    def with_overrides(self, **overrides) -> 'Shipfile':
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if not overrides:
            return self
        pipeline = PipelineConfig.model_validate(
            {**self.pipeline.model_dump(), **overrides}
        )
        return self.model_copy(update={'pipeline': pipeline})

    def gate_prompt(self, stage_name: str) -> str | None:
        prompt = self.gates.get(stage_name)
        if prompt is None:
            return None
        p = self.pipeline
        return prompt.format(
            image=p.local_ref,
            registry=p.registry,
            remote=p.remote_ref,
            namespace=p.namespace,
            deployment=p.deployment,
            branch=p.branch,
        )
