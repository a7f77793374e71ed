from __future__ import annotations


class WorkflowError(Exception):
    """Base class for recoverable errors raised by the tagihan core.

    The engine never retries: every subclass is handed back to the caller,
    which decides whether to refetch, prompt the user or abort. ``message_key``
    selects the user-facing text in :mod:`tagihan.core.i18n`.
    """

    message_key = "error.workflow"
    http_status = 400

    def __init__(self, detail: str = "", **context: object) -> None:
        self.detail = detail
        self.context = context
        super().__init__(detail or self.message_key)

    def to_dict(self) -> dict[str, object]:
        return {
            "error": type(self).__name__,
            "message_key": self.message_key,
            "detail": self.detail,
            **{k: v for k, v in self.context.items() if v is not None},
        }


class StaleStateError(WorkflowError):
    message_key = "error.stale_state"
    http_status = 409


class TerminalStateError(StaleStateError):
    message_key = "error.terminal_state"


class RevisionWindowClosedError(StaleStateError):
    message_key = "error.revision_window_closed"


class AlreadyLockedError(WorkflowError):
    message_key = "error.already_locked"
    http_status = 423


class DuplicateSequenceError(WorkflowError):
    message_key = "error.duplicate_sequence"
    http_status = 409


class NumberCollisionError(DuplicateSequenceError):
    message_key = "error.number_collision"


class MissingReferenceDataError(WorkflowError):
    message_key = "error.missing_reference_data"
    http_status = 422


class ValidationError(WorkflowError):
    message_key = "error.validation"
    http_status = 422


class PermissionDeniedError(WorkflowError):
    message_key = "error.permission_denied"
    http_status = 403


class DocumentNotFoundError(WorkflowError):
    message_key = "error.not_found"
    http_status = 404
