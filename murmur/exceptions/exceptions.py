from typing import Any
from datetime import datetime, timezone
import logging
import traceback

class BaseAppError(Exception):
    """Base exception class with structured logging"""
    log_level = logging.ERROR

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(self.message)
        self._log_error()

    def _log_error(self):
        logger = logging.getLogger(__name__)
        logger.log(
            self.log_level,
            f"{self.__class__.__name__}: {self.message}",
            extra={
                "exception_type": self.__class__.__name__,
                "exception_message": self.message,
                "context": self.context,
                "timestamp": self.timestamp,
                "stack_trace": traceback.format_exc()
            },
        )

# --- credential errors: surfaced to the user, never retried --- #

class CredentialError(BaseAppError):
    log_level = logging.WARNING

class InvalidCredentialsError(CredentialError):
    pass

class MissingPeerKeyError(CredentialError):
    pass

class SessionLockedError(CredentialError):
    pass

class AccountNotFoundError(CredentialError):
    pass

# --- integrity errors: record stays in its last known good state --- #

class IntegrityError(BaseAppError):
    log_level = logging.WARNING

class InvalidStatusTransitionError(IntegrityError):
    def __init__(self, message: str, current: str | None = None, requested: str | None = None,
                 context: dict[str, Any] | None = None):
        self.current = current
        self.requested = requested
        context = context or {}
        context.update({"current_status": current, "requested_status": requested})
        super().__init__(message, context)

class DuplicateMessageError(IntegrityError):
    pass

class InvalidCallStateError(IntegrityError):
    pass

# --- policy errors: rejected synchronously, nothing persisted --- #

class PolicyError(BaseAppError):
    log_level = logging.WARNING

class AccountExistsError(PolicyError):
    pass

class BlockedSenderError(PolicyError):
    pass

class CallBusyError(PolicyError):
    pass

class NotPendingError(PolicyError):
    pass

class UnknownParticipantError(PolicyError):
    pass

class NotFoundError(BaseAppError):
    log_level = logging.WARNING

class FriendNotFoundError(NotFoundError):
    pass

class MessageNotFoundError(NotFoundError):
    pass

class ConversationNotFoundError(NotFoundError):
    pass

class ValidationError(BaseAppError):
    log_level = logging.WARNING

    def __init__(self, message: str, field: str | None = None, context: dict[str, Any] | None = None):
        self.field = field
        context = context or {}
        context.update({"field": field})
        super().__init__(message, context)

# --- infrastructure errors --- #

class InfrastructureError(BaseAppError):
    def __init__(self, message: str, original_error: Exception | None = None, context: dict[str, Any] | None = None):
        self.original_error = original_error
        context = context or {}
        if original_error:
            context.update({
                "original_error_type": original_error.__class__.__name__,
                "original_error_message": str(original_error)
            })
        super().__init__(message, context)

class RetryableError(InfrastructureError):
    """Marks errors that can be retried"""
    pass

class NonRetryableError(BaseAppError):
    """Marks errors that should not be retried"""
    pass

class DatabaseError(RetryableError):
    pass

class MigrationError(InfrastructureError):
    pass

class NetworkError(RetryableError):
    pass

class SignalingTimeoutError(RetryableError):
    pass

class APIError(BaseAppError):
    def __init__(self, message: str, status_code: int | None = None,
                 response_data: dict[str, Any] | None = None, context: dict[str, Any] | None = None):
        self.status_code = status_code
        self.response_data = response_data
        context = context or {}
        context.update({
            "status_code": status_code,
            "response_data": response_data
        })
        super().__init__(message, context)

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500

    @property
    def is_server_error(self) -> bool:
        return self.status_code is not None and 500 <= self.status_code < 600

class CryptographyError(InfrastructureError):
    pass

class KeyGenerationError(CryptographyError):
    pass

class EncryptionError(CryptographyError):
    pass

class DecryptionError(CryptographyError, IntegrityError):
    log_level = logging.WARNING

class InvalidKeyError(CryptographyError):
    pass

class InvalidCiphertextError(DecryptionError):
    pass
