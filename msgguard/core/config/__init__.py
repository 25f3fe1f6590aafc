from msgguard.core.config.manager import ConfigManager
from msgguard.core.config.models import PipelineConfig
from msgguard.core.config.paths import ConfigFsPaths

__all__ = ["ConfigManager", "ConfigFsPaths", "PipelineConfig"]
