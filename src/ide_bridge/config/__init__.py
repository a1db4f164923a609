"""配置加载（YAML defaults + overlays + pydantic 校验）。"""

from ide_bridge.config.defaults import load_default_config_dict
from ide_bridge.config.loader import IdeBridgeConfig, load_config, load_config_dicts

__all__ = ["IdeBridgeConfig", "load_config", "load_config_dicts", "load_default_config_dict"]
