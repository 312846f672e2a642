# ECOF Delivery - Core Module
"""
Core module containing:
- config: environment-driven settings
- logging: request/tick id aware logging
- errors: error taxonomy
"""

from .config import Settings, get_settings, reload_settings
from .errors import *
