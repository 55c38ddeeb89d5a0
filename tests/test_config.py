"""Unit tests for config handling in coexpression/utils.py"""

import os

import pytest
import yaml

from coexpression.errors import ConfigurationError, DegenerateDataError
from coexpression.utils import (
    chunk_ranges,
    default_config,
    load_config,
    override_config,
    param_string,
    setup_run_dirs,
    validate_config,
)


CONFIG_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'configs')


class TestValidateConfig:
    def test_defaults_valid(self):
        cfg = default_config()
        assert validate_config(cfg) is cfg

    @pytest.mark.parametrize('section,key,value', [
        ('network', 'power', 0),
        ('network', 'power', 2.5),
        ('network', 'power', True),
        ('network', 'fallback_power', True),
        ('network', 'fallback_power', 0),
        ('network', 'powers', [1, 2, 60]),
        ('network', 'type', 'directed'),
        ('network', 'dtype', 'float16'),
        ('modules', 'min_module_size', 1),
        ('modules', 'deep_split', 5),
        ('modules', 'merge_threshold', -0.1),
        ('modules', 'cut_height', 1.5),
        ('quality', 'max_missing_fraction', 1.0),
        ('traits', 'min_samples', 2),
    ])
    def test_out_of_range(self, section, key, value):
        cfg = override_config(default_config(), {section: {key: value}})
        with pytest.raises(ConfigurationError) as exc:
            validate_config(cfg)
        assert exc.value.stage == 'configuration'
        assert key in str(exc.value)

    def test_empty_powers(self):
        cfg = override_config(default_config(), {'network': {'powers': []}})
        with pytest.raises(DegenerateDataError):
            validate_config(cfg)

    def test_fixed_power_accepted(self):
        cfg = override_config(default_config(), {'network': {'power': 8}})
        validate_config(cfg)


class TestLoadConfig:
    def test_partial_yaml_layered_over_defaults(self, tmp_path):
        path = tmp_path / 'cfg.yaml'
        path.write_text(yaml.safe_dump({'network': {'power': 8},
                                        'modules': {'min_module_size': 20}}))
        cfg = load_config(str(path))
        assert cfg['network']['power'] == 8
        assert cfg['network']['type'] == 'signed'
        assert cfg['modules']['min_module_size'] == 20
        assert cfg['modules']['merge_threshold'] == 0.10

    def test_shipped_default_is_valid(self):
        cfg = load_config(os.path.join(CONFIG_DIR, 'default.yaml'))
        validate_config(cfg)
        assert cfg == override_config(default_config(), cfg)

    def test_override_does_not_mutate(self):
        base = default_config()
        override_config(base, {'network': {'power': 4}})
        assert base['network']['power'] == 'auto'


class TestHelpers:
    def test_param_string(self):
        cfg = override_config(default_config(), {'network': {'power': 6}})
        assert param_string(cfg) == 'signed_p6_m35_ds2_mt10'

    def test_setup_run_dirs(self, tmp_path):
        cfg = override_config(default_config(), {'paths': {'output_dir': str(tmp_path)}})
        dirs = setup_run_dirs(cfg)
        for key in ('run_dir', 'modules_dir', 'premerge_dir', 'comparisons_dir'):
            assert os.path.isdir(dirs[key])
        assert dirs['run_dir'].startswith(str(tmp_path))

    def test_chunk_ranges(self):
        assert chunk_ranges(5, 2) == [(0, 2), (2, 4), (4, 5)]
        assert chunk_ranges(3, 10) == [(0, 3)]
        assert chunk_ranges(0, 4) == []


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
