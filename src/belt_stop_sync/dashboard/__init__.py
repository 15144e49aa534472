"""
Web dashboard for operating a belt-stop sensor.
"""

from .app import BeltStopApp, create_app

__all__ = ["BeltStopApp", "create_app"]
