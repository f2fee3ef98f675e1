# syncqueue/common/states.py

from datetime import datetime, UTC
from typing import Dict, Any, Optional


class BaseState:
    """
    A job status together with the data of the transition into it.

    ``job_fields`` returns the column updates a store applies when a job
    enters the state; ``serialize_data`` is what gets written to the job
    history.
    """

    NAME = "base"

    def __init__(self, created_at: Optional[datetime] = None, reason: Optional[str] = None):
        self.created_at = created_at or datetime.now(UTC)
        self.reason = reason

    @property
    def name(self) -> str:
        return self.NAME

    def job_fields(self) -> Dict[str, Any]:
        return {"status": self.NAME}

    def serialize_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"created_at": self.created_at.isoformat()}
        if self.reason:
            data["reason"] = self.reason
        return data


class PendingState(BaseState):
    NAME = "pending"

    def __init__(self, scheduled_for: datetime, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.scheduled_for = scheduled_for

    def job_fields(self) -> Dict[str, Any]:
        fields = super().job_fields()
        fields.update({"scheduled_for": self.scheduled_for, "started_at": None})
        return fields

    def serialize_data(self) -> Dict[str, Any]:
        data = super().serialize_data()
        data["scheduled_for"] = self.scheduled_for.isoformat()
        return data


class RunningState(BaseState):
    NAME = "running"

    def job_fields(self) -> Dict[str, Any]:
        fields = super().job_fields()
        fields["started_at"] = self.created_at
        return fields


class CompletedState(BaseState):
    NAME = "completed"

    def __init__(self, result: Any, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.result = result

    def job_fields(self) -> Dict[str, Any]:
        fields = super().job_fields()
        fields.update({"completed_at": self.created_at, "result": self.result})
        return fields

    def serialize_data(self) -> Dict[str, Any]:
        data = super().serialize_data()
        data["result"] = self.result
        return data


class FailedState(BaseState):
    NAME = "failed"

    def __init__(self, error_message: str, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.error_message = error_message

    def job_fields(self) -> Dict[str, Any]:
        fields = super().job_fields()
        fields.update(
            {"completed_at": self.created_at, "error_message": self.error_message}
        )
        return fields

    def serialize_data(self) -> Dict[str, Any]:
        data = super().serialize_data()
        data["error_message"] = self.error_message
        return data


class CancelledState(BaseState):
    NAME = "cancelled"

    def job_fields(self) -> Dict[str, Any]:
        fields = super().job_fields()
        fields["completed_at"] = self.created_at
        return fields


ALL_STATES = [
    PendingState.NAME,
    RunningState.NAME,
    CompletedState.NAME,
    FailedState.NAME,
    CancelledState.NAME,
]

TERMINAL_STATES = {CompletedState.NAME, FailedState.NAME, CancelledState.NAME}
