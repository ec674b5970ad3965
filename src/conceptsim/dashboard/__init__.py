"""Dashboard package exports."""

from .server import DashboardNavigator, create_app

__all__ = ["create_app", "DashboardNavigator"]
