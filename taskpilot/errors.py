"""Domain exceptions raised by the TaskPilot services."""


class TaskPilotError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TaskPilotError):
    status_code = 422


class PermissionDeniedError(TaskPilotError):
    status_code = 403


class NotFoundError(TaskPilotError):
    status_code = 404


class InvitationExpiredError(TaskPilotError):
    status_code = 410


class UsageLimitError(TaskPilotError):
    status_code = 429

    def __init__(self, message: str, limit: int = 0, used: int = 0, plan: str = ""):
        super().__init__(message)
        self.limit = limit
        self.used = used
        self.plan = plan


class AIServiceError(TaskPilotError):
    status_code = 502


class AINotConfiguredError(TaskPilotError):
    status_code = 503


class MemberLimitError(UsageLimitError):
    status_code = 422
