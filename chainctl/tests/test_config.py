import logging

import pytest
import yaml

from chainctl.config import ControllerConfig
from chainctl.logging import setup_logging
from chainctl.modules.errors import ConfigurationError
from chainctl.modules.settings import NetworkSettings


def write(path, data):
    path.write_text(yaml.safe_dump(data))
    return path


def test_defaults(tmp_path):
    config = ControllerConfig.load(write(tmp_path / 'c.yaml', {}), environ={})
    assert config.network == 'net-1'
    assert config.waits.poll_interval == 1.0
    assert config.process.launcher is None
    assert config.stages_root == config.network_dir.parent / 'stages'


def test_file_values_and_env_overrides(tmp_path):
    path = write(tmp_path / 'c.yaml', {
        'assets_root': str(tmp_path / 'assets'),
        'network': 'from-file',
        'waits': {'timeout': 30},
        'upgrade': {'stages_root': str(tmp_path / 'releases')},
    })
    config = ControllerConfig.load(path, environ={
        'CHAINCTL_NETWORK': 'from-env',
        'CHAINCTL_NODE_LAUNCHER': 'taskset -c 0',
        'CHAINCTL_POLL_INTERVAL': '2.5',
        'CHAINCTL_LOG_LEVEL': 'DEBUG',
        'CHAINCTL_RPC_HOST': '',
    })
    assert config.network == 'from-env'
    assert config.network_dir == tmp_path / 'assets' / 'from-env'
    assert config.process.launcher == 'taskset -c 0'
    assert config.waits.poll_interval == 2.5
    assert config.waits.timeout == 30
    assert config.logging.level == 'DEBUG'
    assert config.rpc.host == '127.0.0.1'
    assert config.stages_root == tmp_path / 'releases'


def test_invalid_config(tmp_path):
    with pytest.raises(ConfigurationError):
        ControllerConfig.load(tmp_path / 'missing.yaml', environ={})
    with pytest.raises(ConfigurationError):
        ControllerConfig.load(write(tmp_path / 'c.yaml', {'waits': {'poll_interval': 0}}), environ={})
    bad = tmp_path / 'list.yaml'
    bad.write_text("- a\n- b\n")
    with pytest.raises(ConfigurationError):
        ControllerConfig.load(bad, environ={})


def test_save_round_trip(tmp_path):
    config = ControllerConfig(assets_root=str(tmp_path), network='saved')
    config.save(tmp_path / 'out' / 'config.yaml')
    loaded = ControllerConfig.load(tmp_path / 'out' / 'config.yaml', environ={})
    assert loaded.network == 'saved'
    assert loaded.assets_root == str(tmp_path)


def test_network_settings_load(tmp_path):
    path = write(tmp_path / 'net.yaml', {'name': 'alpha', 'node_count': 3, 'chain': {'minimum_era_height': 5}})
    settings = NetworkSettings.load(path)
    assert settings.name == 'alpha'
    assert settings.chain.minimum_era_height == 5
    with pytest.raises(ConfigurationError):
        NetworkSettings.load(tmp_path / 'nope.yaml')


def test_setup_logging_file(tmp_path):
    log_file = tmp_path / "logs" / "chainctl.log"
    root = logging.getLogger("chainctl")
    saved = root.handlers[:]
    root.handlers.clear()
    logger = setup_logging("WARNING", log_file=str(log_file))
    try:
        logger.warning("written to file")
        for handler in logger.handlers:
            handler.flush()
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        root.handlers.extend(saved)
    assert "written to file" in log_file.read_text()
