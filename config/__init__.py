from .settings import get_settings, load_env_file
from .logger import setup_logger

__all__ = ['get_settings', 'load_env_file', 'setup_logger']
