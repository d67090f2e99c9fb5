from .config_loader import config_loader as config, Config, ConfigurationError
from .settings import SniperSettings, Strategy, load_settings

__all__ = ['config', 'Config', 'ConfigurationError', 'SniperSettings', 'Strategy', 'load_settings']
