"""API module for the fleet health endpoints.

This module exposes the FastAPI router for the fleet orchestration backend.
"""

from api.routes import FleetServices, router, set_fleet_services

__all__ = ["FleetServices", "router", "set_fleet_services"]
