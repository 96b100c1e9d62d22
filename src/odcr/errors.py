from __future__ import annotations

import re
from enum import Enum
from typing import List, Optional, Tuple


class ErrorCategory(str, Enum):
    QUOTA = "quota"
    PERMISSION = "permission"
    UNSUPPORTED = "unsupported"
    ZONE = "zone"
    ALREADY_EXISTS = "already_exists"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


# Checked in order, first match wins. Diagnostics only: a wrong category
# never changes what the engine does with the item.
_CATEGORY_PATTERNS: List[Tuple[ErrorCategory, re.Pattern]] = [
    (ErrorCategory.ALREADY_EXISTS, re.compile(r"already exists|AlreadyExists", re.I)),
    (ErrorCategory.TIMEOUT, re.compile(r"timed out|timeout", re.I)),
    (
        ErrorCategory.PERMISSION,
        re.compile(
            r"AuthorizationFailed|does not have authorization|forbidden|"
            r"permission|not authorized|\b403\b",
            re.I,
        ),
    ),
    (
        ErrorCategory.QUOTA,
        re.compile(r"quota|exceed|\blimit\b|limits? (?:has|have) been reached", re.I),
    ),
    (ErrorCategory.ZONE, re.compile(r"\bzones?\b|zonal", re.I)),
    (
        ErrorCategory.UNSUPPORTED,
        re.compile(
            r"not supported|NotSupported|SkuNotAvailable|NotAvailableForSubscription|"
            r"InvalidLocation|LocationNotAvailable|not available|unsupported",
            re.I,
        ),
    ),
]


def classify_error(text: Optional[str]) -> ErrorCategory:
    """Best-effort category for a free-text provider error."""
    if not text:
        return ErrorCategory.UNKNOWN
    for category, pattern in _CATEGORY_PATTERNS:
        if pattern.search(text):
            return category
    return ErrorCategory.UNKNOWN


class ReservationError(Exception):
    """Base class for everything the reconciliation engine raises."""


class ProviderError(ReservationError):
    """A provider call failed. Carries the provider's own error text."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    @property
    def category(self) -> ErrorCategory:
        return classify_error(f"{self.code or ''} {self.message}")


class StepTimeout(ReservationError):
    def __init__(self, step: str, budget_sec: Optional[float] = None):
        detail = f" after {budget_sec:.0f}s" if budget_sec is not None else ""
        super().__init__(f"Timeout: '{step}' did not complete{detail} (run deadline exhausted)")
        self.step = step
        self.category = ErrorCategory.TIMEOUT


class FatalPrecondition(ReservationError):
    """The run cannot continue."""


class CollectionError(FatalPrecondition):
    pass


class CapabilityNotRegistered(FatalPrecondition):
    pass


class GroupUnavailable(FatalPrecondition):
    pass


class ConfigurationError(FatalPrecondition):
    pass


def error_category(exc: BaseException) -> ErrorCategory:
    category = getattr(exc, "category", None)
    if isinstance(category, ErrorCategory):
        return category
    return classify_error(str(exc))
