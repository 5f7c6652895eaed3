import os
import subprocess

import pytest

from shipline.utils import get_bin


@pytest.fixture()
def fresh_get_bin():
    get_bin.cache_clear()
    yield get_bin
    get_bin.cache_clear()


@pytest.mark.unit
def test_symlinked_tool_uses_link_target(tmp_path, monkeypatch, fresh_get_bin):
    target = tmp_path / 'store' / 'bin' / 'git'
    target.parent.mkdir(parents=True)
    target.write_text('')
    link = tmp_path / 'git'
    link.symlink_to(target)
    monkeypatch.setattr(
        'shipline.utils.subprocess.check_output', lambda *args, **kwargs: f'{link}\n'.encode()
    )

    assert fresh_get_bin('git') == os.readlink(link) == str(target)


@pytest.mark.unit
def test_plain_tool_keeps_its_name(tmp_path, monkeypatch, fresh_get_bin):
    tool = tmp_path / 'docker'
    tool.write_text('')
    monkeypatch.setattr(
        'shipline.utils.subprocess.check_output', lambda *args, **kwargs: f'{tool}\n'.encode()
    )

    assert fresh_get_bin('docker') == 'docker'


@pytest.mark.unit
def test_missing_tool_keeps_its_name(monkeypatch, fresh_get_bin):
    def missing(*args, **kwargs):
        raise subprocess.CalledProcessError(1, args[0])

    monkeypatch.setattr('shipline.utils.subprocess.check_output', missing)

    assert fresh_get_bin('trivy') == 'trivy'
