# iKuai Bypass Updater
# Author: iKuai Bypass Updater contributors
# License: MIT

import logging
import os
from typing import Any, Dict, List, Optional

import yaml
from croniter import croniter
from pydantic import BaseModel, Field, StrictBool, StrictInt, ValidationError, ValidationInfo, field_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = './config.yml'
DEFAULT_REQUEST_TIMEOUT = 30


class ConfigError(Exception):
    """Raised when the configuration file is missing or malformed."""


class _Section(BaseModel):
    """Config mapping whose text fields accept any YAML scalar."""

    model_config = {"populate_by_name": True, "frozen": True}

    @field_validator('*', mode='before')
    @classmethod
    def scalar_text(cls, value: Any, info: ValidationInfo) -> Any:
        if cls.model_fields[info.field_name].annotation is not str:
            return value
        if value is None:
            return ''
        if isinstance(value, (dict, list)):
            raise ValueError(f"must be a scalar, got {type(value).__name__}")
        return str(value).strip()


class CustomIspSource(_Section):
    name: str
    url: str


class IpGroupSource(_Section):
    name: str
    url: str


class StreamDomainSource(_Section):
    interface: str
    src_addr: str = Field(default='', alias='src-addr')
    url: str


class StreamIpPortSource(_Section):
    type: str = '0'
    interface: str = ''
    nexthop: str = ''
    src_addr: str = Field(default='', alias='src-addr')
    ip_group: str = Field(alias='ip-group')

    @field_validator('type')
    @classmethod
    def default_type(cls, v: str) -> str:
        return v or '0'

    def ip_group_names(self) -> List[str]:
        """Referenced IP group names, in configured order."""
        return [name.strip() for name in self.ip_group.split(',') if name.strip()]


class Config(_Section):
    """Static configuration for one update run."""

    model_config = {"populate_by_name": True, "frozen": False}

    ikuai_url: str = Field(default='', alias='ikuai-url')
    username: str = ''
    password: str = ''
    cron: str = ''
    request_timeout: StrictInt = Field(default=DEFAULT_REQUEST_TIMEOUT, alias='request-timeout', gt=0)
    clear_unconfigured: StrictBool = Field(default=False, alias='clear-unconfigured')
    custom_isp: List[CustomIspSource] = Field(default_factory=list, alias='custom-isp')
    ip_group: List[IpGroupSource] = Field(default_factory=list, alias='ip-group')
    stream_domain: List[StreamDomainSource] = Field(default_factory=list, alias='stream-domain')
    stream_ipport: List[StreamIpPortSource] = Field(default_factory=list, alias='stream-ipport')

    @field_validator('custom_isp', 'ip_group', 'stream_domain', 'stream_ipport', mode='before')
    @classmethod
    def empty_list(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator('ikuai_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip('/')

    @field_validator('cron')
    @classmethod
    def valid_cron(cls, v: str) -> str:
        if v and not croniter.is_valid(v):
            raise ValueError(f"'{v}' is not a valid cron expression")
        return v

    def source_counts(self) -> Dict[str, int]:
        return {
            'custom-isp': len(self.custom_isp),
            'ip-group': len(self.ip_group),
            'stream-domain': len(self.stream_domain),
            'stream-ipport': len(self.stream_ipport),
        }


def _describe(error: ValidationError) -> str:
    problems = []
    for err in error.errors():
        where = '.'.join(str(part) for part in err['loc']) or 'config'
        problems.append(f"{where}: {err['msg']}")
    return '; '.join(problems)


def parse_config(data: Any) -> Config:
    """Build a Config from the parsed YAML document."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level configuration must be a mapping, got {type(data).__name__}")

    try:
        return Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {_describe(e)}") from e


def load_config(path: str, environ: Optional[Dict[str, str]] = None) -> Config:
    """Read and validate the YAML config file.

    IKUAI_USERNAME / IKUAI_PASSWORD from the environment take precedence over
    the credentials in the file.
    """
    if environ is None:
        environ = os.environ

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    config = parse_config(data)

    if environ.get('IKUAI_USERNAME'):
        config.username = environ['IKUAI_USERNAME']
    if environ.get('IKUAI_PASSWORD'):
        config.password = environ['IKUAI_PASSWORD']

    logger.debug(f"Loaded config from {path}: {config.source_counts()}")
    return config
