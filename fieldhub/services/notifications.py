"""
Toast notification channel.
Components report user-facing outcomes here instead of raising; the UI polls recent toasts.
"""
import itertools
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from ..config import settings

logger = structlog.get_logger(__name__)


class Severity(str, Enum):
    success = "success"
    info = "info"
    warning = "warning"
    error = "error"


class Toast(BaseModel):
    id: int
    severity: Severity
    message: str
    description: Optional[str] = None
    job_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


_LOG_METHOD = {
    Severity.success: "info",
    Severity.info: "info",
    Severity.warning: "warning",
    Severity.error: "error",
}


class ToastChannel:
    def __init__(self, maxlen: Optional[int] = None):
        self._toasts: Deque[Toast] = deque(maxlen=maxlen or settings.toast_buffer_size)
        self._ids = itertools.count(1)

    def notify(
        self,
        severity: Severity,
        message: str,
        description: Optional[str] = None,
        job_id: Optional[str] = None,
        **context: Any,
    ) -> Toast:
        toast = Toast(
            id=next(self._ids),
            severity=severity,
            message=message,
            description=description,
            job_id=job_id,
        )
        self._toasts.append(toast)
        getattr(logger, _LOG_METHOD[severity])("toast", severity=severity.value, message=message, job_id=job_id, **context)
        return toast

    def recent(self, after_id: int = 0, job_id: Optional[str] = None) -> List[Toast]:
        return [
            t for t in self._toasts
            if t.id > after_id and (job_id is None or t.job_id in (None, job_id))
        ]

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for t in self._toasts:
            counts[t.severity.value] = counts.get(t.severity.value, 0) + 1
        return counts
