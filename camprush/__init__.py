"""
CampRush Registration Engine

Fires a camp registration at the instant its window opens and routes the
steps a machine cannot do (CAPTCHA, login, payment) to a parent.

1. Engine (camprush.engine)
   - Attempt scheduler, submission executor, barrier classifier
   - Assistance workflow with checkpoints for resume

2. Browser automation (camprush.browser)
   - Playwright executor that submits through a real browser
"""
from .common.config import Config, load_config

__version__ = "1.0.0"

__all__ = [
    "Config",
    "load_config",
]
