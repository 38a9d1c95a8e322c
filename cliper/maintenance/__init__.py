from cliper.maintenance.scheduler import MaintenanceScheduler
from cliper.maintenance.tiering import MaintenanceRunner

__all__ = ["MaintenanceScheduler", "MaintenanceRunner"]
