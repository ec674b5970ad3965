"""Simulation package exports."""

from .controller import ControllerState, ControllerStatus, Navigator, SimulationController, build_controller

__all__ = ["SimulationController", "ControllerState", "ControllerStatus", "Navigator", "build_controller"]
