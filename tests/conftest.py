from __future__ import annotations

import os

import pytest

from msgguard.core.config.manager import ConfigManager
from msgguard.core.config.paths import ConfigFsPaths

from .helpers.fakes import FakeClock


@pytest.fixture
def tmp_config_root(tmp_path):
    """
    Provides an isolated root with config/ and data/ under tmp_path.
    """
    fs = ConfigFsPaths(root=str(tmp_path))
    os.makedirs(fs.config_dir, exist_ok=True)
    os.makedirs(os.path.join(fs.root, "data"), exist_ok=True)
    return fs


@pytest.fixture
def config_manager(tmp_config_root):
    cm = ConfigManager(fs=tmp_config_root, logger=None, read_only=False)
    cm.load_all()
    return cm


@pytest.fixture
def fast_cfg(config_manager):
    """
    Default configuration with a fast audit flusher and no retention thread.
    """
    cfg = config_manager.get()
    audit = cfg.audit.model_copy(update={"flush_interval_seconds": 0.05, "backoff_base_seconds": 0.0, "enqueue_block_seconds": 0.5})
    retention = cfg.retention.model_copy(update={"enabled": False})
    return cfg.model_copy(update={"audit": audit, "retention": retention})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pipeline(fast_cfg, tmp_config_root, clock):
    from msgguard.core.pipeline import build_pipeline

    p = build_pipeline(fast_cfg, fs=tmp_config_root, logger=None, ops=None, clock=clock)
    yield p
    p.stop()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "msgguard.sqlite")
