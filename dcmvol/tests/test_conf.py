'''Tests for the dcmvol.conf module'''
from pytest import raises

from ..conf import _default_conf, DcmVolConfig, InvalidConfigError, ParseConfig
from ..hierarchy import MissingKeyPolicy
from ..volume import SliceOrder


def test_load_default(make_dcmvol_config):
    config = make_dcmvol_config()
    assert config.parse == ParseConfig()
    assert config.volume.slice_order == SliceOrder.INSTANCE_NUMBER


def test_uncommented_default(make_dcmvol_config):
    # Load uncommented version of default config str
    contents = []
    for line in _default_conf.split('\n'):
        if line != '' and line[0] == '#' and not line.startswith('##'):
            contents.append(line[1:])
        else:
            contents.append(line)
    config = make_dcmvol_config('\n'.join(contents))
    assert config.parse.ignore_failed_files is False
    assert config.parse.max_threads == 8
    assert config.parse.file_ext == 'dcm'
    assert config.parse.recurse is True
    assert config.parse.missing_key == MissingKeyPolicy.UNDEFINED
    assert config.volume.slice_order == SliceOrder.INSTANCE_NUMBER


def test_custom_values(make_dcmvol_config):
    config = make_dcmvol_config(
        '[parse]\nmissing_key = "reject"\nrecurse = false\n'
        '[volume]\nslice_order = "insertion"\n'
    )
    assert config.parse.missing_key == MissingKeyPolicy.REJECT
    assert config.parse.recurse is False
    assert config.volume.slice_order == SliceOrder.INSERTION
    assert config.parse.to_kwargs() == {'ignore_failed_files': False,
                                        'max_threads': None,
                                        'missing_key': MissingKeyPolicy.REJECT,
                                       }


def test_overrides(make_dcmvol_config):
    config = make_dcmvol_config()
    parse_conf = config.get_parse_config(ignore_failed_files=True,
                                         max_threads=None,
                                         missing_key='reject')
    assert parse_conf.ignore_failed_files is True
    assert parse_conf.missing_key == MissingKeyPolicy.REJECT
    assert config.parse.ignore_failed_files is False
    assert config.get_volume_config(slice_order=None) == config.volume


def test_invalid_values(make_dcmvol_config):
    with raises(InvalidConfigError):
        make_dcmvol_config('[parse]\nmissing_key = "maybe"\n')
    with raises(InvalidConfigError):
        make_dcmvol_config('[parse]\nmax_threads = 0\n')
    with raises(InvalidConfigError):
        make_dcmvol_config('[parse]\nnot_an_option = 1\n')
    with raises(InvalidConfigError):
        make_dcmvol_config('[network]\nport = 104\n')
    with raises(InvalidConfigError):
        make_dcmvol_config('[parse\n')


def test_create_if_missing(tmp_path):
    conf_path = tmp_path / 'sub' / 'dcmvol_conf.toml'
    with raises(FileNotFoundError):
        DcmVolConfig(conf_path)
    config = DcmVolConfig(conf_path, create_if_missing=True)
    assert conf_path.read_text() == _default_conf
    assert config.config_path == conf_path
