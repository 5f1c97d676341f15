"""Flowmail: event-driven automation engine for marketing workflows."""

from .contracts import Automation, SendRequest, load_automation
from .engine import AutomationEngine
from .execute import StepExecutor
from .mailers import get_mailer
from .persistence import get_repository
from .scanner import TriggerScanner

__version__ = "0.1.0"
__all__ = [
    "Automation",
    "AutomationEngine",
    "SendRequest",
    "StepExecutor",
    "TriggerScanner",
    "get_mailer",
    "get_repository",
    "load_automation",
]
