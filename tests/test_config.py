from __future__ import annotations

import json
import os

import pytest

from msgguard.core.config.manager import ConfigManager
from msgguard.core.config.models import CONFIG_FILES
from msgguard.core.errors import ConfigError
from msgguard.core.ops_log import OpsLogger


def test_missing_files_are_created_from_defaults(tmp_config_root):
    cfg = ConfigManager(fs=tmp_config_root).load_all()
    for name in CONFIG_FILES:
        assert os.path.exists(tmp_config_root.file(name))
    assert cfg.classifier.lexicon_version
    assert cfg.retention.policies[-1].match.is_catch_all()
    assert cfg.audit.batch_size == 100
    assert cfg.audit.flush_interval_seconds == 5.0


def test_save_validates_and_backs_up(config_manager, tmp_config_root):
    data = config_manager.raw("moderation.json")
    data["default_report_priority"] = "HIGH"
    cfg = config_manager.save("moderation.json", data)
    assert cfg.moderation.default_report_priority.value == "HIGH"
    assert any(n.startswith("moderation.json") for n in os.listdir(tmp_config_root.backups_dir))

    with pytest.raises(ConfigError):
        config_manager.save("nope.json", {})


def test_invalid_classifier_config_is_fatal_and_alerted(tmp_config_root, tmp_path):
    ConfigManager(fs=tmp_config_root).load_all()
    path = tmp_config_root.file("classifier.json")
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    data["risk_lexicons"]["LOW"] = ["meh"]
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f)

    ops = OpsLogger(path=str(tmp_path / "ops.jsonl"))
    with pytest.raises(ConfigError) as ei:
        ConfigManager(fs=tmp_config_root, ops=ops).load_all()
    assert ei.value.context["file"] == "classifier.json"
    assert ops.tail(1)[0]["event"] == "config.load_failed"


def test_corrupt_file_is_restored_from_last_known_good(tmp_config_root):
    cm = ConfigManager(fs=tmp_config_root)
    cm.load_all()
    cm.save("web.json", {"port": 9090})
    with open(tmp_config_root.file("web.json"), "w", encoding="utf-8") as f:
        f.write("{not json")
    cfg = ConfigManager(fs=tmp_config_root).load_all()
    assert cfg.web.port == 9090


def test_unknown_keys_are_rejected(tmp_config_root):
    ConfigManager(fs=tmp_config_root).load_all()
    with open(tmp_config_root.file("audit.json"), "w", encoding="utf-8") as f:
        json.dump({"batchsize": 10}, f)
    with pytest.raises(ConfigError):
        ConfigManager(fs=tmp_config_root).load_all()
