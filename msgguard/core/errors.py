from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from msgguard.core.redaction import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class PipelineError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


# ---- startup / config ----
class ConfigError(PipelineError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class ValidationError(PipelineError):
    def __init__(self, user_message: str = "Invalid request.", **ctx: Any):
        super().__init__("validation_error", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class StoreUnavailable(PipelineError):
    def __init__(self, user_message: str = "Storage is unavailable.", **ctx: Any):
        super().__init__("store_unavailable", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


# ---- classification / consent ----
class ClassificationAmbiguous(PipelineError):
    def __init__(self, user_message: str = "Classification is ambiguous.", **ctx: Any):
        super().__init__("classification_ambiguous", user_message, severity=Severity.INFO, recoverable=True, context=ctx)


class ConsentLookupFailed(PipelineError):
    def __init__(self, user_message: str = "Consent lookup failed.", **ctx: Any):
        super().__init__("consent_lookup_failed", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


# ---- audit ----
class AuditWriteFailed(PipelineError):
    def __init__(self, user_message: str = "Audit write failed.", **ctx: Any):
        super().__init__("audit_write_failed", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


class AuditQueueClosed(PipelineError):
    def __init__(self, user_message: str = "Audit log is shut down.", **ctx: Any):
        super().__init__("audit_queue_closed", user_message, severity=Severity.ERROR, recoverable=False, context=ctx)


# ---- retention ----
class RetentionActionFailed(PipelineError):
    def __init__(self, user_message: str = "Retention action failed.", **ctx: Any):
        super().__init__("retention_action_failed", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


# ---- moderation ----
class ModerationConflict(PipelineError):
    def __init__(self, user_message: str = "Moderation entry changed; re-fetch and retry.", **ctx: Any):
        super().__init__("moderation_conflict", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class ModerationNotFound(PipelineError):
    def __init__(self, user_message: str = "Moderation entry not found or already resolved.", **ctx: Any):
        super().__init__("moderation_not_found", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class ResolutionNoteRequired(PipelineError):
    def __init__(self, user_message: str = "A resolution note is required for high-priority entries.", **ctx: Any):
        super().__init__("resolution_note_required", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class DuplicateReport(PipelineError):
    def __init__(self, user_message: str = "You have already reported this message.", **ctx: Any):
        super().__init__("duplicate_report", user_message, severity=Severity.INFO, recoverable=False, context=ctx)


class RetentionEntryNotFound(PipelineError):
    def __init__(self, user_message: str = "No retention entry for this message.", **ctx: Any):
        super().__init__("retention_not_found", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class MessageNotFound(PipelineError):
    def __init__(self, user_message: str = "Message not found.", **ctx: Any):
        super().__init__("message_not_found", user_message, severity=Severity.WARN, recoverable=False, context=ctx)
