# Config parsing
import os
from pathlib import Path
from typing import Any, Dict, MutableMapping, Optional

import toml
import click
from attrs import frozen, field, validators, evolve

from .util import TomlConfigurable, PathInputType, enum_from_str
from .hierarchy import MissingKeyPolicy
from .volume import SliceOrder


class InvalidConfigError(Exception):
    '''Raised if invalid configuration is detected'''


_default_conf = \
'''
########################################################
## Parsing
########################################################

## Uncomment to change how batches of files are parsed

#[parse]
#
#  # Keep going with the files that could be parsed instead of
#  # raising an error when some files fail
#  ignore_failed_files = false
#
#  # Max number of worker threads, by default this depends on the
#  # number of CPUs
#  max_threads = 8
#
#  # When given a directory, only look at files with this extension.
#  # Set to an empty string to look at all files.
#  file_ext = "dcm"
#
#  # Look in sub-directories too
#  recurse = true
#
#  # What to do with files missing the PatientID, StudyID, SeriesNumber
#  # or InstanceNumber. Either "undefined" to group them all under the
#  # key 'undefined', or "reject" to treat them as failures.
#  missing_key = "undefined"


########################################################
## Volume Reconstruction
########################################################

#[volume]
#
#  # Either "instance_number" to sort the slices numerically, or
#  # "insertion" to keep the order the files were parsed in
#  slice_order = "instance_number"
'''


CONF_PATH = os.environ.get('DCMVOL_CONF_PATH',
                           os.path.join(click.get_app_dir('dcmvol'),
                                        'dcmvol_conf.toml'))


def _positive_or_none(inst: Any, attr: Any, value: Optional[int]) -> None:
    if value is not None and value < 1:
        raise ValueError(f"'{attr.name}' must be at least 1, got {value}")


@frozen
class ParseConfig(TomlConfigurable["ParseConfig"]):
    '''Options for parsing batches of files'''

    ignore_failed_files: bool = field(default=False,
                                      validator=validators.instance_of(bool))

    max_threads: Optional[int] = field(default=None,
                                       validator=_positive_or_none)

    file_ext: str = field(default='dcm', validator=validators.instance_of(str))

    recurse: bool = field(default=True, validator=validators.instance_of(bool))

    missing_key: MissingKeyPolicy = field(
        default=MissingKeyPolicy.UNDEFINED,
        converter=lambda v: enum_from_str(MissingKeyPolicy, v),
    )

    def to_kwargs(self) -> Dict[str, Any]:
        '''Keyword arguments for `parse_dicom_files`'''
        return {'ignore_failed_files': self.ignore_failed_files,
                'max_threads': self.max_threads,
                'missing_key': self.missing_key,
               }


@frozen
class VolumeConfig(TomlConfigurable["VolumeConfig"]):
    '''Options for reconstructing volumes'''

    slice_order: SliceOrder = field(
        default=SliceOrder.INSTANCE_NUMBER,
        converter=lambda v: enum_from_str(SliceOrder, v),
    )


def _parse_section(name: str, cls: Any, raw: Any) -> Any:
    if not isinstance(raw, dict):
        raise InvalidConfigError(f"The '{name}' section must be a table")
    try:
        return cls.from_toml_dict(raw)
    except (TypeError, ValueError) as e:
        raise InvalidConfigError(f"Error parsing '{name}' section: {e}")


class DcmVolConfig:
    '''Capture config and support mixing with external (eg. CLI) options

    Parameters
    ----------
    config_path
        Path to the TOML config file

    create_if_missing
        Write out the (fully commented) default config if the file doesn't
        exist, otherwise a `FileNotFoundError` is raised
    '''
    def __init__(self,
                 config_path: PathInputType = CONF_PATH,
                 create_if_missing: bool = False):
        self._config_path = Path(config_path)
        if not self._config_path.exists():
            if create_if_missing:
                config_dir = self._config_path.parent
                config_dir.mkdir(parents=True, exist_ok=True)
                with self._config_path.open('w') as f:
                    f.write(_default_conf)
                conf_str = _default_conf
            else:
                raise FileNotFoundError(self._config_path)
        else:
            with self._config_path.open('r') as f:
                conf_str = f.read()

        try:
            self._raw_conf: MutableMapping[str, Any] = toml.loads(conf_str)
        except toml.TomlDecodeError as e:
            raise InvalidConfigError(f"Unable to parse {self._config_path}: {e}")

        unknown = set(self._raw_conf) - {'parse', 'volume'}
        if unknown:
            raise InvalidConfigError(f"Unknown config sections: {unknown}")
        self._parse = _parse_section('parse',
                                     ParseConfig,
                                     self._raw_conf.get('parse', {}))
        self._volume = _parse_section('volume',
                                      VolumeConfig,
                                      self._raw_conf.get('volume', {}))

    @property
    def config_path(self) -> Path:
        return self._config_path

    @property
    def parse(self) -> ParseConfig:
        return self._parse

    @property
    def volume(self) -> VolumeConfig:
        return self._volume

    def get_parse_config(self, **overrides: Any) -> ParseConfig:
        '''Get the parse options, with any non-None `overrides` applied'''
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if not overrides:
            return self._parse
        return evolve(self._parse, **overrides)

    def get_volume_config(self, **overrides: Any) -> VolumeConfig:
        '''Get the volume options, with any non-None `overrides` applied'''
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if not overrides:
            return self._volume
        return evolve(self._volume, **overrides)
