"""
Cleanup Supervisor

Usage:
    from services.cleanup import CleanupSupervisor

    supervisor = CleanupSupervisor(store, engine, channel, config.cleanup)
    supervisor.start()
"""

from .supervisor import CleanupSupervisor, SweepReport

__all__ = ["CleanupSupervisor", "SweepReport"]
