from enum import Enum
from typing import Any, Dict, Optional


class FailureCategory(Enum):
    """Failure classes, in the order used to pick the aggregate exit status."""

    CONFIGURATION_ABSENT = 2
    ADDRESS_PARSE = 3
    DISCOVERY = 4
    POLICY = 5
    PROBE_INFRASTRUCTURE = 6
    IDENTITY_MISMATCH = 7

    @property
    def exit_code(self) -> int:
        return self.value


EXIT_OK = 0
EXIT_VALUES_UNAVAILABLE = 1
EXIT_USAGE = 1
EXIT_INTERRUPTED = 130


class IrsaCheckError(Exception):
    category: Optional[FailureCategory] = None

    def __init__(self, message: str, meta: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.meta = meta or {}


class ValuesUnavailableError(IrsaCheckError):
    """The merged or default chart values could not be retrieved at all."""


class ConfigurationAbsent(IrsaCheckError):
    category = FailureCategory.CONFIGURATION_ABSENT


class AddressParseError(IrsaCheckError, ValueError):
    category = FailureCategory.ADDRESS_PARSE


class DiscoveryError(IrsaCheckError):
    category = FailureCategory.DISCOVERY


class PolicyValidationFailure(IrsaCheckError):
    category = FailureCategory.POLICY


class ProbeInfrastructureError(IrsaCheckError):
    category = FailureCategory.PROBE_INFRASTRUCTURE


class IdentityMismatch(IrsaCheckError):
    category = FailureCategory.IDENTITY_MISMATCH
