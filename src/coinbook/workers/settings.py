"""arq worker settings module.

Import path for arq CLI: arq coinbook.workers.settings.WorkerSettings
"""

from __future__ import annotations

from coinbook.workers.scheduler import WorkerSettings

__all__ = ["WorkerSettings"]
