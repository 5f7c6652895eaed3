import os
import yaml
from pathlib import Path
from pydantic import AfterValidator, field_validator
from pydantic_core.core_schema import ValidationInfo
from pydantic_settings import BaseSettings
from typing import Annotated


def _default_data_dir() -> Path:
    data_home = os.getenv('XDG_DATA_HOME') or os.path.expanduser('~/.local/share')
    return Path(data_home) / 'shipline'


class Config(BaseSettings):
    host: str = '127.0.0.1'
    port: int = 8420
    debug: bool = False

    data_dir: Annotated[Path, AfterValidator(lambda path: path.absolute())] = (
        _default_data_dir()
    )
    runs_dir: Path = None

    shipfile: Path = Path('shipfile.yml')

    # None keeps approval gates open until someone answers
    gate_timeout: float | None = None

    notify_url: str | None = None
    notify_timeout: float = 10.0

    approval_secret: str | None = None
    approval_token_ttl: int = 60 * 60 * 12

    # noinspection PyNestedDecorators
    @field_validator('runs_dir', mode='before')
    @classmethod
    def default_dirs(cls, v: Path | None, info: ValidationInfo):
        if 'data_dir' not in info.data:
            # pydantic won't show errors until everything is validated
            # we don't want to show all _dir fields as errored if data_dir is not set
            return ''
        if v is None:
            dirname = info.field_name.removesuffix('_dir').replace('_', '-')
            res = info.data['data_dir'] / dirname
        else:
            res = Path(v)
        res.mkdir(parents=True, exist_ok=True)
        return res


config_home = Path(os.getenv('XDG_CONFIG_HOME') or os.path.expanduser('~/.config'))
config_file = config_home / 'shipline' / 'config.yml'
if config_file.is_file():
    config_values = yaml.safe_load(config_file.read_text()) or {}
else:
    config_values = {}
config = Config(**config_values, _env_file='.env', _env_prefix='SHIPLINE_')

__all__ = ['Config', 'config']
