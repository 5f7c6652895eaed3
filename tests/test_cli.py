import pytest
from click.testing import CliRunner

from shipline.__main__ import cli
from shipline.config import config

SHIPFILE = """\
pipeline:
  repository: https://git.example.com/team/web.git
  image: web
  tag: '1.4.0'
  registry: registry.example.com/team
  deployment: web
  container: web
  namespace: prod
"""


@pytest.fixture()
def shipfile_path(tmp_path):
    path = tmp_path / 'shipfile.yml'
    path.write_text(SHIPFILE)
    return path


@pytest.mark.unit
def test_run_with_yes_succeeds(shipfile_path, runs_dir, fake_tools):
    result = CliRunner().invoke(cli, ['run', str(shipfile_path), '--yes', '--tag', '2.0.0'])

    assert result.exit_code == 0, result.output
    assert 'succeeded' in result.output
    assert ['docker', 'push', 'registry.example.com/team/web:2.0.0'] in fake_tools.calls


@pytest.mark.unit
def test_run_asks_before_gates(shipfile_path, runs_dir, fake_tools):
    result = CliRunner().invoke(cli, ['run', str(shipfile_path)], input='n\n')

    assert result.exit_code == 1
    assert 'Push web:1.4.0 to registry.example.com/team?' in result.output
    assert 'aborted' in result.output
    assert 'docker push' not in fake_tools.commands()


@pytest.mark.unit
def test_run_failure_exit_code(shipfile_path, runs_dir, fake_tools):
    fake_tools.exit_codes['trivy image'] = 1
    result = CliRunner().invoke(cli, ['run', str(shipfile_path), '--yes'])

    assert result.exit_code == 1
    assert 'failed' in result.output


@pytest.mark.unit
def test_run_bad_shipfile(tmp_path, runs_dir):
    result = CliRunner().invoke(cli, ['run', str(tmp_path / 'missing.yml')])

    assert result.exit_code == 1
    assert 'not found' in result.output


@pytest.mark.unit
def test_token_command(monkeypatch):
    monkeypatch.setattr(
        config, 'approval_secret', 'an-approval-secret-that-is-long-enough-for-hs256'
    )
    result = CliRunner().invoke(cli, ['token', 'alice'])

    assert result.exit_code == 0
    assert result.output.count('.') == 2


@pytest.mark.unit
def test_token_command_without_secret(monkeypatch):
    monkeypatch.setattr(config, 'approval_secret', None)
    result = CliRunner().invoke(cli, ['token', 'alice'])

    assert result.exit_code == 1
    assert 'approval_secret' in result.output
