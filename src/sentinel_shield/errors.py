"""
Error taxonomy for Sentinel Shield.

Connection and persistence errors are handled where they occur and never
interrupt the pipeline. Action errors always reach the operator layer with
the contract, the vulnerability reference and the failure class.
"""

from __future__ import annotations


class ShieldError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(ShieldError):
    pass


class MonitorConnectionError(ShieldError):
    """Transient failure of the monitoring channel. Always retried."""


class AnalysisError(ShieldError):
    """Missing analysis input.

    The analyzer degrades to "factor not triggered" instead of raising this;
    it exists so callers wrapping external scorers have a type to raise.
    """


class PersistenceError(ShieldError):
    """Journal storage could not be read or written."""


class LifecycleError(ShieldError):
    """Illegal protection lifecycle transition."""


class ScanUnavailable(ShieldError):
    """Contract scan could not run (e.g. source not verified)."""


class ActionError(ShieldError):
    """Failure while invoking the on-chain pause primitive."""

    retryable = False

    def __init__(
        self,
        message: str,
        contract_address: str = "",
        vulnerability_reference: str = "",
    ):
        super().__init__(message)
        self.contract_address = contract_address
        self.vulnerability_reference = vulnerability_reference

    @property
    def failure_class(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, str]:
        return {
            "failure_class": self.failure_class,
            "message": str(self),
            "contract_address": self.contract_address,
            "vulnerability_reference": self.vulnerability_reference,
        }


class AlreadyPaused(ActionError):
    """Another actor paused the contract first. Treated as success."""


class NotAuthorized(ActionError):
    """The executor identity lacks the pauser role on the target."""


class CredentialRejected(ActionError):
    """The sentinel node refused our API key."""


class SubmissionFailed(ActionError):
    """Generic submission or revert failure. Retryable by the caller."""

    retryable = True


TransactionFailed = SubmissionFailed


_ALREADY_PAUSED_MARKERS = ("alreadypaused", "enforcedpause", "pausable: paused", "already paused")
_NOT_AUTHORIZED_MARKERS = (
    "notauthorized",
    "not authorized",
    "accesscontrol",
    "missing role",
    "unauthorized",
)


def classify_pause_error(
    exc: BaseException,
    contract_address: str = "",
    vulnerability_reference: str = "",
) -> ActionError:
    """Map a raw RPC/revert failure onto the action error classes."""
    if isinstance(exc, ActionError):
        return exc

    text = str(exc).lower()
    if any(marker in text for marker in _ALREADY_PAUSED_MARKERS):
        cls: type[ActionError] = AlreadyPaused
    elif any(marker in text for marker in _NOT_AUTHORIZED_MARKERS):
        cls = NotAuthorized
    else:
        cls = SubmissionFailed
    return cls(str(exc) or type(exc).__name__, contract_address, vulnerability_reference)
