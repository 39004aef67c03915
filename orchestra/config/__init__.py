from orchestra.config.loader import load_config
from orchestra.config.schema import EngineConfig, OrchestraConfig

__all__ = ["EngineConfig", "OrchestraConfig", "load_config"]
