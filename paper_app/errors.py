class WorkflowError(Exception):
    """Base error for rejected workflow actions; rendered through api_error."""
    code = "error"
    status = 400

    def __init__(self, message, code=None, status=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status:
            self.status = status


class ValidationFailed(WorkflowError):
    """Input or precondition not met; nothing was changed."""
    code = "validation_failed"
    status = 400


class GateViolation(WorkflowError):
    """Action attempted before the stage it depends on is complete."""
    code = "gate_violation"
    status = 409


class NotFound(WorkflowError):
    code = "not_found"
    status = 404


class Forbidden(WorkflowError):
    code = "forbidden"
    status = 403
