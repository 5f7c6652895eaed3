import pytest
from pydantic import ValidationError

from shipline.exceptions import ConfigurationError
from shipline.runner import load_shipfile
from shipline.schemas.shipfile import PipelineConfig, Shipfile

SHIPFILE = """\
pipeline:
  repository: https://git.example.com/team/web.git
  image: web
  tag: '1.4.0'
  registry: registry.example.com/team/
  registry_username: ci
  deployment: web
  namespace: prod
  manifest: deploy/web.yml
  scan_severity: [critical]
gates:
  push: null
  deploy: 'Ship {remote} to {namespace}?'
"""


@pytest.mark.unit
def test_load_shipfile(tmp_path):
    path = tmp_path / 'shipfile.yml'
    path.write_text(SHIPFILE)
    shipfile = load_shipfile(path)

    p = shipfile.pipeline
    assert p.registry == 'registry.example.com/team'
    assert p.registry_host == 'registry.example.com'
    assert p.local_ref == 'web:1.4.0'
    assert p.remote_ref == 'registry.example.com/team/web:1.4.0'
    assert p.scan_severity == ('CRITICAL',)
    assert p.branch == 'main'
    assert shipfile.stages == ['checkout', 'build', 'scan', 'push', 'deploy']
    assert shipfile.gate_prompt('push') is None
    assert shipfile.gate_prompt('deploy') == (
        'Ship registry.example.com/team/web:1.4.0 to prod?'
    )


@pytest.mark.unit
def test_missing_shipfile(tmp_path):
    with pytest.raises(ConfigurationError, match='not found'):
        load_shipfile(tmp_path / 'shipfile.yml')


@pytest.mark.unit
def test_invalid_yaml(tmp_path):
    path = tmp_path / 'shipfile.yml'
    path.write_text('pipeline: [unclosed')
    with pytest.raises(ConfigurationError):
        load_shipfile(path)


@pytest.mark.unit
def test_missing_required_field(tmp_path):
    path = tmp_path / 'shipfile.yml'
    path.write_text('pipeline:\n  repository: x\n  registry: r\n  deployment: d\n')
    with pytest.raises(ConfigurationError, match='image'):
        load_shipfile(path)


@pytest.mark.unit
def test_paths_must_stay_in_workspace(pipeline_config):
    data = pipeline_config.model_dump()
    data['manifest'] = '../../etc/passwd'
    with pytest.raises(ValidationError):
        PipelineConfig.model_validate(data)


@pytest.mark.unit
def test_pipeline_config_is_immutable(pipeline_config):
    with pytest.raises(ValidationError):
        pipeline_config.tag = 'other'


@pytest.mark.unit
def test_unknown_stage_rejected(pipeline_config):
    with pytest.raises(ValidationError):
        Shipfile(pipeline=pipeline_config, stages=['checkout', 'test'])


@pytest.mark.unit
def test_repeated_stage_rejected(pipeline_config):
    with pytest.raises(ValidationError):
        Shipfile(pipeline=pipeline_config, stages=['build', 'build'])


@pytest.mark.unit
def test_gate_on_unknown_stage_rejected(pipeline_config):
    with pytest.raises(ValidationError):
        Shipfile(pipeline=pipeline_config, gates={'release': 'go?'})


@pytest.mark.unit
def test_gate_prompt_with_unknown_field_rejected(pipeline_config):
    with pytest.raises(ValidationError, match='cluster'):
        Shipfile(pipeline=pipeline_config, gates={'deploy': 'Deploy to {cluster}?'})


@pytest.mark.unit
def test_gates_merge_with_defaults(pipeline_config):
    shipfile = Shipfile(pipeline=pipeline_config, gates={'scan': 'Scan {image}?'})

    assert shipfile.gate_prompt('scan') == 'Scan web:1.4.0?'
    assert shipfile.gate_prompt('push') is not None
    assert shipfile.gate_prompt('deploy') is not None
    assert shipfile.gate_prompt('build') is None


@pytest.mark.unit
def test_with_overrides(shipfile):
    overridden = shipfile.with_overrides(branch='feature/x', tag='abc123', image=None)

    assert overridden.pipeline.branch == 'feature/x'
    assert overridden.pipeline.tag == 'abc123'
    assert overridden.pipeline.image == 'web'
    assert shipfile.pipeline.tag == '1.4.0'
    assert shipfile.with_overrides() is shipfile


@pytest.mark.unit
def test_with_overrides_validates(shipfile):
    with pytest.raises(ValidationError):
        shipfile.with_overrides(tag='not a tag')
