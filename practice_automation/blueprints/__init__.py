"""
Practice Automation Engine
Blueprint registry.
"""

from practice_automation.blueprints.automation_bp import automation_bp

ALL_BLUEPRINTS = (automation_bp,)
