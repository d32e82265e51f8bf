"""Plan and run SQL Server restores from full, differential and log backups."""

__version__ = "0.1.0"

from .errors import (RestoreConfigurationError, RestoreError, RestoreExecutionError,
                     RestorePreconditionError)
from .models import (BackupFile, BackupFileDescriptor, BackupType, RestoreOptions,
                     RestorePlan, RestorePoint, RestorePointResult, RestoreStep)
from .planner import build_restore_points, plan_restore, select_backup_chain
from .runner import restore_database
