"""
Control Plane Exceptions
========================

Error taxonomy shared by the orchestrator, webhook handler and control gateway.
"""

from typing import Dict, List, Optional


class ControlPlaneError(Exception):
    """Base exception for control plane errors."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFound(ControlPlaneError):
    """A service, order, product or OS version does not exist."""
    pass


class NoCapacity(ControlPlaneError):
    """No AVAILABLE address left in the requested location."""
    def __init__(self, location: str):
        self.location = location
        super().__init__(
            f"No available IP addresses in {location}",
            {"location": location},
        )


class InvalidState(ControlPlaneError):
    """Illegal resource state transition."""
    pass


class NetworkProvisioningError(ControlPlaneError):
    """The network allocator rejected or failed a request."""
    pass


class ComputeProvisioningError(ControlPlaneError):
    """The hypervisor rejected or failed a request."""
    pass


class Unauthorized(ControlPlaneError):
    """Payment event signature could not be verified."""
    pass


class Forbidden(ControlPlaneError):
    """Requester does not own the target instance."""
    pass


class ControlFailed(ControlPlaneError):
    """A power action was rejected by the hypervisor."""
    pass


class ProvisioningFailed(ControlPlaneError):
    """
    Aggregate provisioning failure.

    Raised only after every compensation has been attempted. The original
    error is available as ``__cause__``.
    """

    PUBLIC_MESSAGE = "Failed to provision VPS. Please try again later or contact support."

    def __init__(
        self,
        service_id: str,
        failed_step: str,
        cause: Exception,
        compensation_errors: Optional[List[str]] = None,
    ):
        self.service_id = service_id
        self.failed_step = failed_step
        self.cause = cause
        self.compensation_errors = compensation_errors or []
        super().__init__(
            f"Provisioning of service {service_id} failed at {failed_step}: {cause}",
            {
                "service_id": service_id,
                "failed_step": failed_step,
                "compensation_errors": self.compensation_errors,
            },
        )


class PaymentGatewayError(ControlPlaneError):
    """The payment processor API could not be reached or rejected a call."""
    pass
